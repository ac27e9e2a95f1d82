import json

import pytest
import responses

from reviewpost.github_api import GitHubClient
from reviewpost.github_check import MAX_ALLOWED_SIZE, MAX_ANNOTATIONS_PER_REQUEST, Check
from reviewpost.model import (
    Code,
    Comment,
    Diagnostic,
    FilteredDiagnostic,
    Location,
    Position,
    Range,
    ServiceError,
    Severity,
    Source,
)

API = "https://api.test/"
CHECK_RUNS = API + "repos/haya14busa/reviewdog/check-runs"
CHECK_RUN = CHECK_RUNS + "/1414"


@pytest.fixture
def api():
    with responses.RequestsMock(assert_all_requests_are_fired=False) as rsps:
        yield rsps


@pytest.fixture(autouse=True)
def _outside_actions(monkeypatch):
    monkeypatch.delenv("GITHUB_ACTIONS", raising=False)


def _record(api, created, updated, html_url=""):
    def on_create(request):
        created.append(json.loads(request.body))
        return (201, {}, json.dumps({"id": 1414}))

    def on_update(request):
        updated.append(json.loads(request.body))
        return (200, {}, json.dumps({"id": 1414, "html_url": html_url}))

    api.add_callback(responses.POST, CHECK_RUNS, callback=on_create)
    api.add_callback(responses.PATCH, CHECK_RUN, callback=on_update)


def _check(level="warning", name="haya14busa-linter"):
    return Check(GitHubClient(base_url=API), "haya14busa", "reviewdog", 14, "1414", level, name, workdir="")


def _comment(message="test message", line=2, column=0, should_report=True, original=""):
    return Comment(
        result=FilteredDiagnostic(
            diagnostic=Diagnostic(
                message=message,
                location=Location(path="sample.new.txt", range=Range(start=Position(line, column))),
                original_output=original,
            ),
            should_report=should_report,
        )
    )


def test_check_ok(api):
    created, updated = [], []
    _record(api, created, updated, html_url="http://example.com/report_url")
    check = _check()
    comment = _comment(column=1, original="raw test message")
    check.post(comment)
    check.flush()
    assert check.result.conclusion == "neutral"
    assert check.result.report_url == "http://example.com/report_url"
    completed = [u for u in updated if u.get("status") == "completed"]
    assert completed[0]["output"]["title"] == "reviewdog [haya14busa-linter] report"
    assert created[0]["name"] == "haya14busa-linter"
    assert created[0]["head_sha"] == "1414"


def test_check_multiple_update_runs(api):
    created, updated = [], []
    _record(api, created, updated)
    check = _check()
    for _ in range(101):
        check.post(_comment(original="raw test message"))
    check.flush()
    assert check.result.conclusion == "neutral"
    sizes = [len(u["output"].get("annotations", [])) for u in updated]
    assert sizes == [MAX_ANNOTATIONS_PER_REQUEST, MAX_ANNOTATIONS_PER_REQUEST, 1, 0]
    assert updated[-1]["conclusion"] == "neutral"


def test_check_403_in_github_actions_falls_back_to_log(api, monkeypatch, capsys):
    monkeypatch.setenv("GITHUB_ACTIONS", "true")
    api.add(responses.POST, CHECK_RUNS, status=403)
    check = _check()
    check.post(_comment(message="logged message"))
    check.post_filtered(_comment(message="hidden message", should_report=False))
    check.flush()
    out = capsys.readouterr().out
    assert "logged message" in out
    assert "hidden message" not in out
    assert check.result is None


def test_check_403_without_actions_raises(api):
    api.add(responses.POST, CHECK_RUNS, status=403)
    check = _check()
    with pytest.raises(ServiceError, match="failed to create check"):
        check.flush()


def test_summary_too_many_findings_cut_off_correctly():
    check = Check(None, "", "", workdir="")
    comments = [
        Comment(
            result=FilteredDiagnostic(
                should_report=True,
                diagnostic=Diagnostic(
                    message="this is a pretty long test message that will lead to overshooting the maximum allowed size"
                ),
            )
        )
        for _ in range(1000)
    ]
    text = check.summary(comments)
    assert len(text.encode()) <= MAX_ALLOWED_SIZE
    assert "... (Too many findings. Dropped some findings)\n</details>" in text


def test_set_tool_name_for_each_run(api):
    created, updated = [], []
    _record(api, created, updated)
    check = Check(GitHubClient(base_url=API), "haya14busa", "reviewdog", 14, "1414", "", "", workdir="")

    check.set_tool("toolName1", "warning")
    check.post(_comment(message="comment 1", column=1))
    check.flush()
    first_conclusion = check.result.conclusion
    check.set_tool("toolName2", "")
    check.post(_comment(message="comment 2", column=1))
    check.flush()
    second_conclusion = check.result.conclusion

    assert first_conclusion == "neutral"
    assert second_conclusion == "failure"
    assert [c["name"] for c in created] == ["toolName1", "toolName2"]
    annotation_updates = [u for u in updated if u.get("status") != "completed"]
    assert annotation_updates[0]["name"] == "toolName1"
    assert annotation_updates[0]["output"]["annotations"] == [
        {
            "path": "sample.new.txt",
            "start_line": 2,
            "end_line": 2,
            "annotation_level": "warning",
            "message": "comment 1",
            "title": "[toolName1] sample.new.txt#L2",
        }
    ]
    assert annotation_updates[1]["output"]["annotations"] == [
        {
            "path": "sample.new.txt",
            "start_line": 2,
            "end_line": 2,
            "annotation_level": "failure",
            "message": "comment 2",
            "title": "[toolName2] sample.new.txt#L2",
        }
    ]
    titles = [u["output"]["title"] for u in updated if u.get("status") == "completed"]
    assert titles == ["reviewdog [toolName1] report", "reviewdog [toolName2] report"]


def test_post_prefixes_workdir():
    check = Check(None, "o", "r", workdir="sub/")
    comment = _comment()
    check.post(comment)
    assert comment.result.diagnostic.location.path == "sub/sample.new.txt"


@pytest.mark.parametrize(
    ("level", "levels", "want"),
    [
        ("warning", [], "success"),
        ("warning", ["failure"], "neutral"),
        ("info", ["failure"], "neutral"),
        ("error", ["notice"], "failure"),
        ("", [], "success"),
        ("", ["notice"], "neutral"),
        ("", ["notice", "warning"], "neutral"),
        ("", ["notice", "failure", "warning"], "failure"),
    ],
)
def test_conclusion(level, levels, want):
    check = Check(None, "o", "r", level=level, workdir="")
    assert check.conclusion([{"annotation_level": lv} for lv in levels]) == want


@pytest.mark.parametrize(
    ("severity", "level", "want"),
    [
        (Severity.ERROR, "info", "failure"),
        (Severity.WARNING, "", "warning"),
        (Severity.INFO, "", "notice"),
        (Severity.UNKNOWN_SEVERITY, "info", "notice"),
        (Severity.UNKNOWN_SEVERITY, "Warning", "warning"),
        (Severity.UNKNOWN_SEVERITY, "", "failure"),
    ],
)
def test_annotation_level(severity, level, want):
    check = Check(None, "o", "r", level=level, workdir="")
    assert check.annotation_level(severity) == want


def test_build_title_with_code_and_range():
    check = Check(None, "o", "r", tool_name="fallback", workdir="")
    result = FilteredDiagnostic(
        diagnostic=Diagnostic(
            location=Location(path="a.go", range=Range(Position(1), Position(3))),
            source=Source(name="golint"),
            code=Code(value="E1", url="https://example.com/E1"),
        )
    )
    assert check.build_title(result) == "[golint] a.go#L1-L3 <E1>(https://example.com/E1)"


def test_to_annotation_columns_and_raw_details():
    check = Check(None, "o", "r", tool_name="t", workdir="")
    result = FilteredDiagnostic(
        diagnostic=Diagnostic(
            message="m",
            location=Location(path="a.go", range=Range(Position(4, 2), Position(4, 6))),
            original_output="raw",
            severity=Severity.WARNING,
        )
    )
    annotation = check.to_annotation(result)
    assert annotation["start_column"] == 2
    assert annotation["end_column"] == 6
    assert annotation["raw_details"] == "raw"
    assert annotation["annotation_level"] == "warning"