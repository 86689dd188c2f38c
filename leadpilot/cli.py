#!/usr/bin/env python
"""
CLI for the automation runner and its maintenance operations.

Usage:
    python -m leadpilot.cli run-loop [--max-cycles N]
    python -m leadpilot.cli run-once [--dry-run] [--type INVITE ...]
    python -m leadpilot.cli dead-letter
    python -m leadpilot.cli outbox-relay [--once]
    python -m leadpilot.cli recover [--stale-minutes N]
    python -m leadpilot.cli pause [--minutes N] [--reason TEXT]
    python -m leadpilot.cli resume [--clear-quarantine]
    python -m leadpilot.cli status

Commands that execute jobs (run-loop, run-once) load their collaborators
from EXECUTOR_FACTORY, a "module:callable" path returning an ExecutorBundle.
"""

import argparse
import asyncio
import importlib
import json
import signal
from typing import Optional

import structlog

from leadpilot.config import Settings, get_settings
from leadpilot.core.database import create_pool
from leadpilot.core.logging import configure_logging
from leadpilot.core.sentry import init_sentry
from leadpilot.jobs.dead_letter import DeadLetterTriageWorker
from leadpilot.jobs.errors import LockHeldError, LockLostError
from leadpilot.jobs.registry import ExecutorBundle
from leadpilot.jobs.runner import JobRunner
from leadpilot.jobs.types import JobType
from leadpilot.jobs.worker import RunnerLoop, local_today
from leadpilot.repositories.daily_stats import DailyStatsRepository
from leadpilot.repositories.jobs import JobRepository
from leadpilot.repositories.leads import LeadRepository
from leadpilot.repositories.outbox import OutboxRepository
from leadpilot.repositories.runtime_locks import RuntimeLockRepository
from leadpilot.repositories.runtime_state import RuntimeStateRepository
from leadpilot.services.alerts.telegram import get_telegram_notifier
from leadpilot.services.locks import LockLease, generate_owner_id
from leadpilot.services.outbox.relay import OutboxRelay
from leadpilot.services.outbox.sinks import WebhookOutboxSink
from leadpilot.services.risk.gate import RiskGate
from leadpilot.services.risk.incidents import IncidentManager
from leadpilot.services.side_channel import BestEffortSideChannel

logger = structlog.get_logger(__name__)


class ExecutorConfigError(Exception):
    """EXECUTOR_FACTORY is missing or does not resolve to a usable factory."""


def load_executor(path: Optional[str]) -> ExecutorBundle:
    """Import ``module:callable`` and call it to get the executor bundle."""
    if not path or ":" not in path:
        raise ExecutorConfigError("EXECUTOR_FACTORY must be set as 'module:callable'")
    module_name, attr = path.split(":", 1)
    try:
        factory = getattr(importlib.import_module(module_name), attr)
    except (ImportError, AttributeError) as e:
        raise ExecutorConfigError(f"Cannot load executor factory {path}: {e}") from e
    bundle = factory()
    if not isinstance(bundle, ExecutorBundle):
        raise ExecutorConfigError(f"{path} did not return an ExecutorBundle")
    return bundle


class Components:
    """Wires repositories and services around one pool."""

    def __init__(self, pool, settings: Settings):
        self.pool = pool
        self.settings = settings
        self.side_channel = BestEffortSideChannel(settings.side_channel_timeout_s)
        self.notifier = get_telegram_notifier(settings)
        self.jobs = JobRepository(pool, settings.job_retry_base_ms, settings.job_retry_jitter_ms)
        self.outbox = OutboxRepository(pool)
        self.state = RuntimeStateRepository(pool)
        self.stats = DailyStatsRepository(pool)
        self.incidents = IncidentManager(
            pool,
            state=self.state,
            outbox=self.outbox,
            side_channel=self.side_channel,
            notifier=self.notifier,
            rate_limit_types=tuple(settings.rate_limit_error_codes),
            max_pause_minutes=settings.policy_pause_max_minutes,
        )

    def lease(self, command: str) -> LockLease:
        return LockLease(
            RuntimeLockRepository(self.pool),
            self.settings.runner_lock_key,
            owner_id=generate_owner_id(command),
            ttl_seconds=self.settings.runner_lock_ttl_s,
            heartbeat_seconds=self.settings.runner_lock_heartbeat_s,
            metadata={"command": command},
        )

    def runner(self, bundle: ExecutorBundle, lease: LockLease) -> JobRunner:
        return JobRunner(
            self.pool,
            self.settings,
            bundle.registry,
            bundle.session_factory,
            follow_up=bundle.follow_up,
            lease=lease,
            incidents=self.incidents,
            side_channel=self.side_channel,
            jobs=self.jobs,
            outbox=self.outbox,
            state=self.state,
            stats=self.stats,
        )

    def triage(self) -> DeadLetterTriageWorker:
        s = self.settings
        return DeadLetterTriageWorker(
            self.jobs,
            batch_size=s.dead_letter_batch_size,
            recycle_delay_seconds=s.dead_letter_recycle_delay_s,
            recycle_jitter_seconds=s.dead_letter_recycle_jitter_s,
            recycle_priority=s.dead_letter_recycle_priority,
        )

    def gate(self) -> RiskGate:
        return RiskGate(self.stats, self.incidents, self.settings)


async def cmd_run_loop(c: Components, args: argparse.Namespace) -> int:
    """Run scheduled cycles under the runtime lock."""
    bundle = load_executor(c.settings.executor_factory)
    lease = c.lease("run-loop")
    loop = RunnerLoop(
        c.settings,
        lease,
        c.runner(bundle, lease),
        c.gate(),
        c.jobs,
        c.state,
        triage=c.triage(),
    )

    event_loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        event_loop.add_signal_handler(sig, lambda: asyncio.ensure_future(loop.stop()))

    results = await loop.start(max_cycles=args.max_cycles)
    print(f"Cycles completed: {len(results)}")
    return 0


async def cmd_run_once(c: Components, args: argparse.Namespace) -> int:
    """Run one gated pass under the runtime lock."""
    bundle = load_executor(c.settings.executor_factory)
    lease = c.lease("run-once")
    await lease.acquire()
    try:
        recovered = await c.jobs.recover_stale(c.settings.job_stale_minutes)
        await c.jobs.dead_letter_unknown_types()
        today = local_today(c.settings)
        decision = await c.gate().check(today)
        if not decision.proceed:
            print(f"Pass skipped: {decision.reason} (risk score {decision.snapshot.score})")
            return 0

        types = [JobType(t) for t in args.types] if args.types else None
        async with lease.keepalive():
            result = await c.runner(bundle, lease).run_pass(
                today,
                job_budget=decision.job_budget,
                allowed_types=types,
                dry_run=args.dry_run,
            )
    finally:
        await lease.release()

    print(f"Recovered stale: {recovered}")
    print(f"Risk score:      {decision.snapshot.score} ({decision.snapshot.action.value})")
    for account in result.accounts:
        print(
            f"  {account.account_id}: processed={account.processed} "
            f"succeeded={account.succeeded} failed={account.failed} "
            f"dead_lettered={account.dead_lettered} rotations={account.rotations} "
            f"stop={account.stop_reason}"
        )
    if result.skipped_accounts:
        print(f"Skipped accounts: {', '.join(result.skipped_accounts)}")
    return 0


async def cmd_dead_letter(c: Components, args: argparse.Namespace) -> int:
    result = await c.triage().run()
    print(
        f"Processed: {result.processed}  Recycled: {result.recycled}  "
        f"Terminal: {result.dead_lettered}"
    )
    return 0


async def cmd_outbox_relay(c: Components, args: argparse.Namespace) -> int:
    """Deliver outbox events to the configured webhook."""
    s = c.settings
    if not s.webhook_url:
        logger.error("outbox_relay_not_configured", reason="WEBHOOK_URL is not set")
        return 1

    sink = WebhookOutboxSink(s.webhook_url, s.webhook_secret, timeout=s.webhook_timeout_ms / 1000)
    relay = OutboxRelay(
        c.outbox,
        sink,
        batch_size=s.outbox_batch_size,
        max_retries=s.outbox_max_retries,
        timeout_ms=s.webhook_timeout_ms,
        backlog_alert_threshold=s.outbox_backlog_alert_threshold,
        side_channel=c.side_channel,
        notifier=c.notifier,
    )

    if args.once:
        result = await relay.run_once()
        print(
            f"Fetched: {result.fetched}  Delivered: {result.delivered}  "
            f"Retried: {result.retried}  Failed: {result.permanent_failures}  "
            f"Pending: {result.pending}"
        )
        return 0

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)
    await relay.run_forever(stop, poll_interval=s.outbox_poll_interval_s)
    return 0


async def cmd_recover(c: Components, args: argparse.Namespace) -> int:
    minutes = args.stale_minutes or c.settings.job_stale_minutes
    recovered = await c.jobs.recover_stale(minutes)
    unknown = await c.jobs.dead_letter_unknown_types()
    print(f"Recovered {recovered} stale job(s)")
    print(f"Dead-lettered {unknown} job(s) of unknown type")
    return 0


async def cmd_pause(c: Components, args: argparse.Namespace) -> int:
    details = {"source": "cli", "reason": args.reason}
    if args.minutes:
        outcome = await c.incidents.pause("MANUAL_PAUSE", details, args.minutes)
        print(f"Paused until {outcome.paused_until} (incident #{outcome.incident_id})")
    else:
        await c.state.set_pause(None, "MANUAL_PAUSE")
        print("Paused until manual resume")
    return 0


async def cmd_resume(c: Components, args: argparse.Namespace) -> int:
    resolved = await c.incidents.resume(clear_quarantine=args.clear_quarantine)
    print(f"Resumed; {resolved} incident(s) resolved")
    return 0


async def cmd_status(c: Components, args: argparse.Namespace) -> int:
    """Print runtime state as JSON."""
    flags = await c.state.read_flags()
    lock = await RuntimeLockRepository(c.pool).get(c.settings.runner_lock_key)
    today = local_today(c.settings)
    stats = await c.stats.get(today)
    status = {
        "paused": flags.paused,
        "paused_until": flags.paused_until,
        "pause_reason": flags.pause_reason,
        "quarantined": flags.quarantined,
        "lock": (
            {"owner_id": lock.owner_id, "expires_at": lock.expires_at} if lock else None
        ),
        "jobs": await c.jobs.count_by_status(),
        "leads": await LeadRepository(c.pool).count_by_status(),
        "outbox_pending": await c.outbox.count_pending(),
        "daily_stats": {
            "date": today,
            "invites_sent": stats.invites_sent,
            "messages_sent": stats.messages_sent,
            "challenges_count": stats.challenges_count,
            "selector_failures": stats.selector_failures,
            "run_errors": stats.run_errors,
        },
    }
    print(json.dumps(status, indent=2, default=str))
    return 0


COMMANDS = {
    "run-loop": cmd_run_loop,
    "run-once": cmd_run_once,
    "dead-letter": cmd_dead_letter,
    "outbox-relay": cmd_outbox_relay,
    "recover": cmd_recover,
    "pause": cmd_pause,
    "resume": cmd_resume,
    "status": cmd_status,
}


async def run_command(args: argparse.Namespace) -> int:
    settings = get_settings()
    configure_logging(settings.log_level)
    init_sentry(settings)

    pool = await create_pool(settings)
    try:
        return await COMMANDS[args.command](Components(pool, settings), args)
    except LockHeldError as e:
        logger.error("runtime_lock_held", lock_key=e.lock_key, holder=e.holder)
        return 2
    except LockLostError as e:
        logger.error("runtime_lock_lost_abort", lock_key=e.lock_key, owner_id=e.owner_id)
        return 3
    except ExecutorConfigError as e:
        logger.error("executor_config_invalid", error=str(e))
        return 1
    finally:
        await pool.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Outreach automation runner",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    loop_parser = subparsers.add_parser("run-loop", help="Run scheduled runner cycles")
    loop_parser.add_argument(
        "--max-cycles",
        type=int,
        help="Stop after this many cycles (default: run until signalled)",
    )

    once_parser = subparsers.add_parser("run-once", help="Run a single gated pass")
    once_parser.add_argument(
        "--dry-run",
        "-n",
        action="store_true",
        help="Handlers run in dry-run mode; daily send counters are not bumped",
    )
    once_parser.add_argument(
        "--type",
        "-t",
        dest="types",
        action="append",
        choices=[jt.value for jt in JobType],
        help="Only claim jobs of this type (repeatable)",
    )

    subparsers.add_parser("dead-letter", help="Triage dead-lettered jobs")

    relay_parser = subparsers.add_parser("outbox-relay", help="Deliver outbox events")
    relay_parser.add_argument(
        "--once",
        action="store_true",
        help="Deliver one batch and exit",
    )

    recover_parser = subparsers.add_parser("recover", help="Requeue stale RUNNING jobs")
    recover_parser.add_argument(
        "--stale-minutes",
        type=int,
        help="Lock age threshold (default: JOB_STALE_MINUTES)",
    )

    pause_parser = subparsers.add_parser("pause", help="Pause automation")
    pause_parser.add_argument(
        "--minutes",
        "-m",
        type=int,
        help="Pause length; omit to pause until manual resume",
    )
    pause_parser.add_argument("--reason", default="manual", help="Free-text reason")

    resume_parser = subparsers.add_parser("resume", help="Resume automation")
    resume_parser.add_argument(
        "--clear-quarantine",
        action="store_true",
        help="Also lift the account quarantine",
    )

    subparsers.add_parser("status", help="Show runtime state")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    return asyncio.run(run_command(args))


if __name__ == "__main__":
    raise SystemExit(main())
