"""Post code-review diagnostics to GitHub, GitLab and Gitea."""

__version__ = "0.1.0"