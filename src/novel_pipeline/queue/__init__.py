"""SQLite-backed job queue for chapter stages.

Why not Celery / Dramatiq / RQ?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
The pipeline runs one worker on one machine against one SQLite file. What it
needs from a queue is narrow but specific:

- A compare-and-swap claim so an accidental second worker never double-runs a
  job.
- Rate-limit backpressure that pauses work without spending the retry budget,
  and resumes it when the provider's usage window resets.
- A step ledger per attempt, so an interrupted job can be diagnosed and a
  stage can skip work it already persisted.
- A narrow cross-job handoff (structural review feeds the revision job).

A broker would add an operational dependency while all of the above would
still live in custom task code, so the queue is a table plus ``worker.py``.
"""
