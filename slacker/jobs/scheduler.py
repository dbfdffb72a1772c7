"""
Sweep scheduler: runs the sweeps on their cron schedules.

Schedules (overridable through settings):
- sweep_cron  (default 0 * * * *):  unsnooze, follow_up, unassign
- digest_cron (default 0 12 * * 5): digest

Every run takes a short-lived lease in the sweep_leases table first, so two
scheduler processes (or a manual `once` run) never overlap on the same sweep.

Usage:
    slacker-sweeps run            # loop forever
    slacker-sweeps once unassign  # one ad-hoc pass
"""

import asyncio
import logging
import socket
import traceback
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

import httpx
from croniter import croniter
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.config import Settings
from ..services.side_effects import SideEffects
from .sweeps import SweepResult, SweepService

logger = logging.getLogger(__name__)

SWEEP_NAMES = ("unsnooze", "follow_up", "unassign", "digest")


# =============================================================================
# ALERTING
# =============================================================================


async def send_alert(
    webhook_url: str | None,
    title: str,
    message: str,
    severity: str = "error",
    details: dict | None = None,
) -> None:
    """
    Send an alert when a sweep crashes.

    Always logs; also posts to the Slack alerts webhook when one is configured.
    """
    log_message = f"[SWEEP ALERT] {title}: {message}"
    if details:
        log_message += f" | Details: {details}"

    if severity == "critical":
        logger.critical(log_message)
    else:
        logger.error(log_message)

    if webhook_url:
        try:
            await _send_slack_alert(webhook_url, title, message, severity, details)
        except Exception as e:
            logger.error(f"Failed to send Slack alert: {e}")


async def _send_slack_alert(
    webhook_url: str,
    title: str,
    message: str,
    severity: str,
    details: dict | None,
) -> None:
    """Send alert to Slack."""
    color = "#dc2626" if severity == "critical" else "#f59e0b"  # Red or orange

    blocks = [
        {
            "type": "header",
            "text": {"type": "plain_text", "text": f"🚨 {title}", "emoji": True},
        },
        {
            "type": "section",
            "text": {"type": "mrkdwn", "text": message},
        },
    ]

    if details:
        details_text = "\n".join([f"• *{k}*: {v}" for k, v in details.items()])
        blocks.append({
            "type": "section",
            "text": {"type": "mrkdwn", "text": details_text},
        })

    blocks.append({
        "type": "context",
        "elements": [
            {"type": "mrkdwn", "text": f"Severity: *{severity.upper()}* | Time: {datetime.now(timezone.utc).isoformat()}"},
        ],
    })

    async with httpx.AsyncClient() as client:
        await client.post(
            webhook_url,
            json={"attachments": [{"color": color, "blocks": blocks}]},
            timeout=10,
        )


# =============================================================================
# SCHEDULER
# =============================================================================


class SweepScheduler:
    """Evaluates the cron schedules and runs due sweeps under a lease."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        effects: SideEffects,
        settings: Settings,
        holder: str | None = None,
    ):
        self._session_factory = session_factory
        self._effects = effects
        self._settings = settings
        self._holder = holder or f"{socket.gethostname()}-{uuid4().hex[:8]}"
        self._schedules: dict[str, tuple[str, ...]] = {
            settings.sweep_cron: ("unsnooze", "follow_up", "unassign"),
        }
        self._schedules.setdefault(settings.digest_cron, ())
        self._schedules[settings.digest_cron] += ("digest",)
        self._stopped = asyncio.Event()

    def next_runs(self, after: datetime) -> dict[str, datetime]:
        """Next firing time of every schedule, keyed by cron expression."""
        return {
            expression: croniter(expression, after).get_next(datetime)
            for expression in self._schedules
        }

    def stop(self) -> None:
        self._stopped.set()

    async def _dispatch(self, name: str, sweeps: SweepService, now: datetime) -> SweepResult:
        if name == "unsnooze":
            return await sweeps.unsnooze_sweep(now)
        if name == "follow_up":
            return await sweeps.follow_up_sweep(now)
        if name == "unassign":
            return await sweeps.auto_unassign_sweep(now)
        if name == "digest":
            return await sweeps.weekly_digest_sweep(now)
        raise ValueError(f"Unknown sweep: {name}")

    async def run_once(self, name: str, now: datetime | None = None) -> SweepResult | None:
        """
        Run one sweep under its lease.

        Returns None when another holder has the lease. A crash is alerted
        and re-raised.
        """
        if name not in SWEEP_NAMES:
            raise ValueError(f"Unknown sweep: {name}")

        now = now or datetime.now(timezone.utc)
        ttl = timedelta(seconds=self._settings.sweep_lease_seconds)

        async with self._session_factory() as session:
            sweeps = SweepService(session, self._effects)
            if not await sweeps.acquire_lease(name, self._holder, ttl, now):
                logger.info(f"Sweep {name} is already running elsewhere, skipping")
                return None

            try:
                return await self._dispatch(name, sweeps, now)
            except Exception as e:
                await session.rollback()
                await send_alert(
                    self._settings.alert_webhook_url,
                    title=f"Sweep {name} failed",
                    message=f"The {name} sweep crashed unexpectedly.",
                    severity="critical",
                    details={
                        "error": str(e),
                        "traceback": traceback.format_exc()[-500:],  # Last 500 chars
                        "started_at": now.isoformat(),
                    },
                )
                raise
            finally:
                await sweeps.release_lease(name, self._holder)

    async def run_due(self, expression: str, now: datetime) -> dict[str, Any]:
        """Run every sweep of one schedule; one crashing sweep does not stop the rest."""
        results: dict[str, Any] = {}
        for name in self._schedules[expression]:
            try:
                results[name] = await self.run_once(name, now)
            except Exception as e:
                results[name] = str(e)
        return results

    async def run_forever(self) -> None:
        logger.info(f"Sweep scheduler {self._holder} started: {self._schedules}")
        while not self._stopped.is_set():
            now = datetime.now(timezone.utc)
            upcoming = self.next_runs(now)
            fire_at = min(upcoming.values())
            delay = max(0.0, (fire_at - now).total_seconds())

            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=delay)
                break
            except asyncio.TimeoutError:
                pass

            for expression, when in upcoming.items():
                if when == fire_at:
                    results = await self.run_due(expression, when)
                    logger.info(f"Schedule {expression} finished: {results}")

        logger.info(f"Sweep scheduler {self._holder} stopped")


# =============================================================================
# CLI ENTRY POINT
# =============================================================================


async def _run(args) -> None:
    from ..core.config import get_settings
    from ..core.database import close_db, create_engine, create_session_factory
    from ..core.dependencies import build_side_effects, close_side_effects

    settings = get_settings()
    database_url = args.database_url or settings.database_url
    engine = create_engine(database_url, echo=settings.database_echo)
    effects = build_side_effects(settings)
    scheduler = SweepScheduler(create_session_factory(engine), effects, settings)

    try:
        if args.command == "once":
            result = await scheduler.run_once(args.name)
            print(f"Sweep completed: {result}")
        else:
            await scheduler.run_forever()
    finally:
        await close_side_effects(effects)
        await close_db(engine)


def main():
    """CLI entry point for the sweep scheduler."""
    import argparse

    parser = argparse.ArgumentParser(description="Run the Slacker sweeps")
    parser.add_argument(
        "--database-url",
        default=None,
        help="Database connection string (defaults to DATABASE_URL)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("run", help="Run the sweeps on their schedules until stopped")
    once = subparsers.add_parser("once", help="Run one sweep now")
    once.add_argument("name", choices=SWEEP_NAMES)

    args = parser.parse_args()

    # Configure logging
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        asyncio.run(_run(args))
    except KeyboardInterrupt:
        pass
    except Exception as e:
        print(f"Sweep failed: {e}")
        exit(1)


if __name__ == "__main__":
    main()
