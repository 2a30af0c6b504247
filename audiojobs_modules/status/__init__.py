"""Status projection of jobs keyed by recording id."""
