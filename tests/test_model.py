import os

import pytest

from reviewpost.model import (
    BODY_PREFIX,
    Comment,
    Diagnostic,
    FilteredDiagnostic,
    Location,
    Position,
    PostedComments,
    Range,
    code_fence,
    code_fence_length,
    join_workdir,
    markdown_comment,
)


def _comment(path, message="msg"):
    return Comment(
        result=FilteredDiagnostic(
            diagnostic=Diagnostic(message=message, location=Location(path=path))
        )
    )


@pytest.mark.parametrize(
    "text, expected",
    [
        ("line1\nline2\nline3", 3),
        ("```\nsome code\n```", 4),
        ("```\n`````", 6),
        ("```shell\ngit config --global receive.advertisepushoptions true\n```", 4),
    ],
)
def test_code_fence_length(text, expected):
    assert code_fence_length(text) == expected


def test_code_fence_is_longer_than_any_run():
    text = "a `` b ````` c"
    fence = code_fence(code_fence_length(text))
    assert set(fence) == {"`"}
    assert fence not in text


def test_join_workdir_root():
    assert join_workdir("", "a/b/c") == "a/b/c"


def test_join_workdir_subdir():
    assert join_workdir("cmd" + os.sep, "a/b/c") == "cmd/a/b/c"


def test_join_workdir_empty():
    assert join_workdir("", "") == ""


def test_markdown_comment_has_prefix_and_message():
    comment = _comment("file.go", "new comment")
    assert markdown_comment(comment) == BODY_PREFIX + "new comment"


def test_posted_comments_round_trip():
    posted = PostedComments()
    comment = _comment("file.go")
    body = markdown_comment(comment)
    assert not posted.is_posted(comment, 1, body)
    posted.add("file.go", 1, body)
    assert posted.is_posted(comment, 1, body)
    assert not posted.is_posted(comment, 2, body)
    assert not posted.is_posted(_comment("other.go"), 1, body)
    assert not posted.is_posted(comment, 1, body + "x")


def test_posted_comments_counts_distinct_bodies():
    posted = PostedComments()
    posted.add("a", 1, "x")
    posted.add("a", 1, "x")
    posted.add("a", 1, "y")
    posted.add("b", 2, "x")
    assert len(posted) == 3


def test_range_defaults_to_zero_lines():
    rng = Range(start=Position(line=15, column=5))
    assert (rng.start_line, rng.start_column) == (15, 5)
    assert (rng.end_line, rng.end_column) == (0, 0)
    assert Location().range.start_line == 0