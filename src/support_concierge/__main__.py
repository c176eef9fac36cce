"""Entry point for `python -m support_concierge` and the `support-concierge` CLI script."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
from dataclasses import replace
from pathlib import Path
from typing import Any

from support_concierge.agent_runtime import RoleAgentRuntime
from support_concierge.issue_tracker import GitHubIssueTracker
from support_concierge.llm import ChatOpenAILanguageModel, UsageTracker, ensure_openai_api_key
from support_concierge.models import IssueEvent, RunContext
from support_concierge.settings import RuntimeSettings
from support_concierge.spec_pack import load_spec_pack
from support_concierge.workflow import SupportConciergeWorkflow


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Process one issue or comment event with the support concierge")
    parser.add_argument(
        "--event-file",
        type=Path,
        default=Path(os.environ["GITHUB_EVENT_PATH"]) if os.getenv("GITHUB_EVENT_PATH") else None,
        help="Path to the webhook event payload (default: $GITHUB_EVENT_PATH)",
    )
    parser.add_argument(
        "--event-name",
        default=os.getenv("GITHUB_EVENT_NAME", ""),
        help="Event name, 'issues' or 'issue_comment' (default: $GITHUB_EVENT_NAME)",
    )
    parser.add_argument("--dry-run", action="store_true", help="Run the full pipeline without writing to the tracker")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    return parser.parse_args(argv)


def load_event(*, event_file: Path | None, event_name: str) -> IssueEvent:
    if event_file is None:
        raise ValueError("An event file is required (--event-file or GITHUB_EVENT_PATH)")
    if not event_name.strip():
        raise ValueError("An event name is required (--event-name or GITHUB_EVENT_NAME)")
    if not event_file.is_file():
        raise FileNotFoundError(f"Event file does not exist: {event_file}")
    payload: Any = json.loads(event_file.read_text(encoding="utf-8"))
    if not isinstance(payload, dict):
        raise ValueError(f"Event file must contain a JSON object: {event_file}")
    return IssueEvent.from_github(event_name.strip(), payload)


async def run_event(settings: RuntimeSettings, event: IssueEvent, token: str) -> tuple[RunContext, UsageTracker]:
    runtime = RoleAgentRuntime(settings=settings)
    usage = UsageTracker(ChatOpenAILanguageModel(runtime=runtime, timeout=settings.llm_timeout_seconds))
    async with GitHubIssueTracker(settings=settings, token=token) as tracker:
        workflow = SupportConciergeWorkflow(
            settings=settings,
            tracker=tracker,
            llm=usage,
            runtime=runtime,
            spec_pack=load_spec_pack(settings.spec_pack_file()),
        )
        ctx = await workflow.run(event)
    return ctx, usage


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        settings = RuntimeSettings.from_env()
        if args.dry_run:
            settings = replace(settings, dry_run=True)
        event = load_event(event_file=args.event_file, event_name=args.event_name)
        ensure_openai_api_key()
        token = os.getenv("GITHUB_TOKEN", "").strip()
        if not token:
            raise ValueError("GITHUB_TOKEN is required")
    except (OSError, ValueError, RuntimeError) as exc:
        logging.error("Unable to start: %s", exc)
        return 1

    ctx, usage = asyncio.run(run_event(settings, event, token))

    decision = ctx.decision.action.value if ctx.decision is not None else "none"
    print(f"path={' -> '.join(ctx.path)}")
    print(f"decision={decision}")
    print(f"reply={ctx.reply_kind.value if ctx.reply_kind is not None else 'none'}")
    if ctx.stop_reason:
        print(f"stop_reason={ctx.stop_reason}")
    print(f"total_tokens={usage.total_tokens}")
    print("usage:")
    print(json.dumps(usage.summary(), indent=2))
    if ctx.error:
        print(f"error={ctx.error}")
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
