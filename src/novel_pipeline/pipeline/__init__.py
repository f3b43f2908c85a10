"""Chapter pipeline: stage handlers, prompts, validation and orchestration."""
