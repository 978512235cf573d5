"""Tests for reference-time capture and session result verification."""

import json
from datetime import datetime, timezone
from unittest.mock import MagicMock

from host_cli import CommandResult, HostCLIError
from result_verifier import (
    ResultVerifier,
    VerificationStatus,
    has_issue_link,
    parse_timestamp,
)

REPO = "acme/widgets"
REFERENCE = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def make_cli(responses: dict[str, CommandResult]) -> MagicMock:
    """Answer gh calls by the first response key found in the joined argv."""
    cli = MagicMock()

    def gh(args, cwd=None, timeout=None, check=False):
        joined = " ".join(args)
        for key, result in responses.items():
            if key in joined:
                return result
        return CommandResult(["gh", *args], 1, "", "not found")

    cli.gh.side_effect = gh
    return cli


def ok(stdout: str) -> CommandResult:
    return CommandResult(["gh"], 0, stdout, "")


def pr_json(**overrides) -> str:
    pr = {
        "number": 12,
        "url": "https://github.com/acme/widgets/pull/12",
        "createdAt": "2024-05-01T12:30:00Z",
        "updatedAt": "2024-05-01T12:45:00Z",
        "isDraft": False,
        "title": "Fix widget",
        "state": "OPEN",
        "body": "Fixes #7",
    }
    pr.update(overrides)
    return json.dumps([pr])


def test_parse_timestamp_handles_z_suffix() -> None:
    assert parse_timestamp("2024-05-01T12:00:00Z") == REFERENCE
    assert parse_timestamp("") is None
    assert parse_timestamp("yesterday") is None


def test_reference_time_is_latest_known_event() -> None:
    cli = make_cli({
        "issues/7 --jq": ok("2024-04-01T00:00:00Z"),
        "issues/7/comments": ok("2024-04-20T00:00:00Z\n2024-05-01T12:00:00Z"),
        "pr list": ok("2024-04-25T00:00:00Z"),
    })
    assert ResultVerifier(cli).capture_reference_time(REPO, 7) == REFERENCE


def test_reference_time_falls_back_to_now() -> None:
    cli = MagicMock()
    cli.gh.side_effect = HostCLIError("timed out")
    before = datetime.now(timezone.utc)
    reference = ResultVerifier(cli).capture_reference_time(REPO, 7)
    assert reference >= before


def test_new_pull_request_is_this_sessions_result() -> None:
    cli = make_cli({"--head issue-7-abcd1234": ok(pr_json())})
    result = ResultVerifier(cli).verify_results(REPO, 7, "issue-7-abcd1234", REFERENCE)
    assert result.status is VerificationStatus.PULL_REQUEST
    assert result.number == 12
    assert result.found


def test_stale_pull_request_is_ignored() -> None:
    stale = pr_json(createdAt="2024-04-01T00:00:00Z", updatedAt="2024-05-01T12:00:00Z")
    cli = make_cli({"--head issue-7-abcd1234": ok(stale)})
    result = ResultVerifier(cli).verify_results(REPO, 7, "issue-7-abcd1234", REFERENCE, user="alice")
    assert result.status is VerificationStatus.NO_RESULT
    assert result.message == "No new pull request or comment was created."


def test_missing_link_and_draft_are_fixed() -> None:
    cli = make_cli({
        "--head issue-7-abcd1234": ok(pr_json(body="Adds a widget", isDraft=True)),
        "pr edit": ok(""),
        "pr ready": ok(""),
    })
    ResultVerifier(cli).verify_results(REPO, 7, "issue-7-abcd1234", REFERENCE)

    calls = [c.args[0] for c in cli.gh.call_args_list]
    assert ["pr", "edit", "12", "--repo", REPO, "--body", "Adds a widget\n\nFixes #7"] in calls
    assert ["pr", "ready", "12", "--repo", REPO] in calls


def test_fork_mode_uses_qualified_issue_reference() -> None:
    cli = make_cli({
        "--head issue-7-abcd1234": ok(pr_json(body="")),
        "pr edit": ok(""),
    })
    ResultVerifier(cli).verify_results(REPO, 7, "issue-7-abcd1234", REFERENCE, fork_mode=True)
    calls = [c.args[0] for c in cli.gh.call_args_list]
    assert ["pr", "edit", "12", "--repo", REPO, "--body", "Fixes acme/widgets#7"] in calls


def test_pull_request_edit_errors_do_not_escape(caplog) -> None:
    responses = {"--head issue-7-abcd1234": ok(pr_json(body="Adds a widget", isDraft=True))}
    cli = make_cli(responses)
    fallback = cli.gh.side_effect

    def gh(args, cwd=None, timeout=None, check=False):
        if args[:2] in (["pr", "edit"], ["pr", "ready"]):
            raise HostCLIError(f"command timed out after 120s: gh {' '.join(args[:2])}")
        return fallback(args, cwd=cwd, timeout=timeout, check=check)

    cli.gh.side_effect = gh
    with caplog.at_level("WARNING"):
        result = ResultVerifier(cli).verify_results(REPO, 7, "issue-7-abcd1234", REFERENCE)

    assert result.status is VerificationStatus.PULL_REQUEST
    assert "Could not add issue link to #12" in caplog.text
    assert "Could not mark #12 ready" in caplog.text


def test_continued_pull_request_body_is_left_alone() -> None:
    cli = make_cli({"--head feature-x": ok(pr_json(body="Adds a widget"))})
    result = ResultVerifier(cli).verify_results(REPO, 12, "feature-x", REFERENCE, link_issue=False)
    assert result.status is VerificationStatus.PULL_REQUEST
    assert not any(c.args[0][:2] == ["pr", "edit"] for c in cli.gh.call_args_list)


def test_new_comment_by_user_is_a_result() -> None:
    comments = "\n".join([
        "alice\t2024-04-01T00:00:00Z\thttps://github.com/acme/widgets/issues/7#issuecomment-1",
        "bob\t2024-05-02T00:00:00Z\thttps://github.com/acme/widgets/issues/7#issuecomment-2",
        "alice\t2024-05-02T00:00:00Z\thttps://github.com/acme/widgets/issues/7#issuecomment-3",
    ])
    cli = make_cli({"--head": ok("[]"), "issues/7/comments": ok(comments)})
    result = ResultVerifier(cli).verify_results(REPO, 7, "issue-7-abcd1234", REFERENCE, user="alice")
    assert result.status is VerificationStatus.COMMENT
    assert result.url.endswith("issuecomment-3")


def test_has_issue_link_variants() -> None:
    assert has_issue_link("Fixes #7", REPO, 7)
    assert has_issue_link("closes acme/widgets#7", REPO, 7)
    assert has_issue_link("Resolves: https://github.com/acme/widgets/issues/7", REPO, 7)
    assert not has_issue_link("Fixes #70", REPO, 7)
    assert not has_issue_link("Related to #7", REPO, 7)
