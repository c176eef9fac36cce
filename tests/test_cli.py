from __future__ import annotations

import json
from pathlib import Path

import pytest

from support_concierge.__main__ import load_event, main, parse_args


def _write_event(tmp_path: Path) -> Path:
    path = tmp_path / "event.json"
    path.write_text(
        json.dumps(
            {
                "action": "created",
                "issue": {"number": 3, "title": "Crash", "body": "boom", "user": {"login": "alice"}},
                "comment": {"id": 11, "user": {"login": "alice"}, "body": "/stop"},
                "repository": {"full_name": "acme/widgets"},
            }
        ),
        encoding="utf-8",
    )
    return path


def test_load_event_parses_comment_payload(tmp_path: Path) -> None:
    event = load_event(event_file=_write_event(tmp_path), event_name="issue_comment")

    assert event.repository.owner == "acme"
    assert event.repository.name == "widgets"
    assert event.issue.number == 3
    assert event.author == "alice"
    assert event.is_comment_event


def test_load_event_rejects_bad_input(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="event file"):
        load_event(event_file=None, event_name="issues")
    with pytest.raises(ValueError, match="event name"):
        load_event(event_file=_write_event(tmp_path), event_name=" ")
    with pytest.raises(FileNotFoundError):
        load_event(event_file=tmp_path / "missing.json", event_name="issues")

    listing = tmp_path / "list.json"
    listing.write_text("[]", encoding="utf-8")
    with pytest.raises(ValueError, match="JSON object"):
        load_event(event_file=listing, event_name="issues")

    bare = tmp_path / "bare.json"
    bare.write_text('{"action": "opened"}', encoding="utf-8")
    with pytest.raises(ValueError, match="'issue' and 'repository'"):
        load_event(event_file=bare, event_name="issues")


def test_parse_args_reads_github_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("GITHUB_EVENT_PATH", str(tmp_path / "event.json"))
    monkeypatch.setenv("GITHUB_EVENT_NAME", "issues")

    args = parse_args(["--dry-run"])

    assert args.event_file == tmp_path / "event.json"
    assert args.event_name == "issues"
    assert args.dry_run


def test_main_requires_github_token(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.delenv("GITHUB_TOKEN", raising=False)

    exit_code = main(["--event-file", str(_write_event(tmp_path)), "--event-name", "issue_comment"])

    assert exit_code == 1


def test_main_rejects_invalid_settings(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("SUPPORTBOT_MAX_REFINEMENTS", "7")

    exit_code = main(["--event-file", str(_write_event(tmp_path)), "--event-name", "issue_comment"])

    assert exit_code == 1
