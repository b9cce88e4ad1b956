"""mergeloop: drive coding-agent work items from issue intake to merge."""

__version__ = "0.1.0"
