"""Business-entity store: projects, books and chapters."""
