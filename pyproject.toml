[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "reviewpost"
version = "0.1.0"
description = "Post linter diagnostics as review comments, check runs and annotations on GitHub, GitLab and Gitea"
requires-python = ">=3.10"
dependencies = [
    "requests",
]
keywords = ["code review", "linter", "pull request", "merge request", "github", "gitlab", "gitea"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Quality Assurance",
]

[project.optional-dependencies]
test = [
    "pytest",
    "responses",
]

[tool.hatch.build.targets.wheel]
packages = ["reviewpost"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
