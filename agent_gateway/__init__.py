"""agent-gateway: GitLab webhook dispatch to coding-agent execution units."""

__version__ = "0.1.0"
