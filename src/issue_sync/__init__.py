"""Three-way issue synchronization between local records, GitHub and Jira."""

__version__ = "0.1.0"
