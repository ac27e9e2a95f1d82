# reviewpost

`reviewpost` takes diagnostics from linters and other code checkers and reports
them on the code-hosting service where the change is being reviewed:

- **GitHub**: as pull-request review comments (`reviewpost.github_pr.PullRequest`),
  as a check run with annotations (`reviewpost.github_check.Check`), or as
  GitHub Actions workflow log commands (`reviewpost.github_log.GitHubActionLog`).
- **GitLab**: as merge-request discussions
  (`reviewpost.gitlab_discussion.MergeRequestDiscussionCommenter`) or as commit
  comments (`reviewpost.gitlab_commit.MergeRequestCommitCommenter`).
- **Gitea**: as pull-request review comments (`reviewpost.gitea.GiteaPullRequest`).

The diff of a change can be fetched with
`reviewpost.github_diff.PullRequestDiffService`, `PullRequest.diff()`,
`reviewpost.gitlab_diff.MergeRequestDiff` and `GiteaPullRequest.diff()`.

Comments that are already present on the review are recognised and are not
posted again.

## Installation

```
pip install reviewpost
```

Every service works out where the current directory lies inside the git
checkout when it is created, so it must be created inside one (or be given
`workdir=` explicitly). Some services run the `git` command: GitHub diffs that
are too large for the API, GitLab merge-request diffs, and `git blame` for
GitLab commit comments.

## Building diagnostics

Findings are described with the dataclasses in `reviewpost.model`:

```python
from reviewpost.model import (
    Comment, Diagnostic, FilteredDiagnostic, Location, Position, Range, Severity,
)

diagnostic = Diagnostic(
    message="unused variable 'x'",
    location=Location(
        path="app/main.py",
        range=Range(start=Position(line=12, column=5)),
    ),
    severity=Severity.WARNING,
)
comment = Comment(
    result=FilteredDiagnostic(
        diagnostic=diagnostic,
        in_diff_file=True,
        in_diff_context=True,
        should_report=True,
    ),
    tool_name="pyflakes",
)
```

Paths are relative to the current directory. `post()` rewrites them to be
relative to the repository root, with forward slashes.

## Posting to a GitHub pull request

```python
from reviewpost.github_api import GitHubClient
from reviewpost.github_pr import PullRequest

client = GitHubClient(token="token")
pr = PullRequest(client, "owner", "repo", 42, "<head sha>", "warning", "pyflakes")
pr.post(comment)
pr.flush()
```

`flush()` reads the existing review comments and skips findings whose
fingerprint is already posted on the same line. New findings inside the diff
context become inline comments of one review; findings in a changed file but
outside the diff context become file comments. At most 30 inline comments and
10 file comments go out per run; the rest are listed in the review body.
Earlier comments from the same tool that are no longer reported are deleted,
unless someone has replied to them.

Inside GitHub Actions, findings outside the changed files are written as
workflow log commands. If posting the review or a comment fails with 403 or
404 there, a notice is printed to standard error and later `flush()` calls
report through workflow log commands instead of the review API.

## Reporting as a GitHub check run

```python
from reviewpost.github_check import Check

check = Check(client, "owner", "repo", 42, "<head sha>", "warning", "pyflakes")
check.post(comment)
check.flush()
print(check.result.conclusion, check.result.report_url)
```

Only comments with `should_report` set become annotations; they are sent in
batches of 50. Comments passed to `post_filtered()` are listed in the summary
under "Filtered Findings". The summary is cut off before it goes over 65535
bytes. If creating the check run is forbidden inside GitHub Actions, the
findings are written as workflow log commands and `check.result` stays `None`.

## GitLab and Gitea

```python
from reviewpost.gitlab_api import GitLabClient
from reviewpost.gitlab_discussion import MergeRequestDiscussionCommenter

gitlab = GitLabClient(token="token", base_url="https://gitlab.example.com/api/v4")
commenter = MergeRequestDiscussionCommenter(gitlab, "group", "project", 7, "<head sha>")
commenter.post(comment)
commenter.flush()
```

Discussions carry GitLab suggestion blocks for suggestions with a full range.

```python
from reviewpost.gitea import GiteaClient, GiteaPullRequest

gitea = GiteaClient("https://gitea.example.com", token="token")
pr = GiteaPullRequest(gitea, "owner", "repo", 3, "<head sha>")
pr.post(comment)
pr.flush()
```

Gitea reviews only include findings inside the diff context.

## Errors

Failures from a service API raise `GitHubAPIError`, `GitLabAPIError` or
`GiteaAPIError`, which carry `status_code`. All of them, and the other errors
raised by the services, are subclasses of `reviewpost.model.ServiceError`.
When no git checkout is found, `reviewpost.serviceutil` raises
`FileNotFoundError`.

## Environment

- `GITHUB_ACTIONS` (any non-empty value) turns on the fallbacks that use
  workflow log commands.
- `GITHUB_SERVER_URL` sets the base of the links in check summaries
  (default `https://github.com`).
- `REVIEWDOG_SKIP_GIT_FETCH=true` skips `git fetch` when a GitHub diff has to
  be built locally.
- `CI_MERGE_REQUEST_DIFF_BASE_SHA` gives the merge base for GitLab diffs.

## What it does not do

`reviewpost` is a library only: it has no command-line tool. It does not run
linters, parse their output, or decide which findings fall inside a diff; the
caller fills in `FilteredDiagnostic` (`in_diff_file`, `in_diff_context`,
`should_report` and the rest) before posting.