"""
Worker health: heartbeat freshness and per-follower copy success.

success ratio = filled / (filled + failed); skipped trades are not counted.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from rich.console import Console
from rich.table import Table

from copytrader.live.scheduler import HEARTBEAT_KEY
from copytrader.storage import repository
from copytrader.utils.clock import Clock, utc_now


@dataclass
class FollowerHealth:
    follower_id: int
    name: str
    copying_enabled: bool
    filled: int = 0
    failed: int = 0
    skipped: int = 0

    @property
    def success_ratio(self) -> Optional[float]:
        return success_ratio(self.filled, self.failed)


@dataclass
class WorkerHealth:
    heartbeat_at: Optional[datetime]
    heartbeat_age_seconds: Optional[float]
    stale: bool
    followers: List[FollowerHealth] = field(default_factory=list)


def success_ratio(filled: int, failed: int) -> Optional[float]:
    attempts = filled + failed
    if attempts == 0:
        return None
    return filled / attempts


def collect_health(stale_after_seconds: float = 60.0, clock: Clock = utc_now) -> WorkerHealth:
    now = clock()
    heartbeat_at = repository.get_system_config_updated_at(HEARTBEAT_KEY)
    age = (now - heartbeat_at).total_seconds() if heartbeat_at else None
    stale = age is None or age > stale_after_seconds

    stats = repository.get_follower_trade_stats()
    followers = []
    for user in repository.get_followers():
        counts = stats.get(user.id, {})
        followers.append(FollowerHealth(
            follower_id=user.id,
            name=user.name,
            copying_enabled=user.copying_enabled,
            filled=counts.get("filled", 0),
            failed=counts.get("failed", 0),
            skipped=counts.get("skipped", 0),
        ))
    return WorkerHealth(heartbeat_at=heartbeat_at, heartbeat_age_seconds=age, stale=stale, followers=followers)


def render_health(health: WorkerHealth, console: Optional[Console] = None) -> None:
    console = console or Console()

    if health.heartbeat_at is None:
        console.print("[bold red]Worker heartbeat: never recorded[/bold red]")
    elif health.stale:
        console.print(
            f"[bold red]Worker heartbeat: STALE ({health.heartbeat_age_seconds:.0f}s ago)[/bold red]"
        )
    else:
        console.print(
            f"[bold green]Worker heartbeat: OK ({health.heartbeat_age_seconds:.0f}s ago)[/bold green]"
        )

    table = Table(title="Followers")
    table.add_column("ID", justify="right")
    table.add_column("Name")
    table.add_column("Copying")
    table.add_column("Filled", justify="right")
    table.add_column("Failed", justify="right")
    table.add_column("Skipped", justify="right")
    table.add_column("Success", justify="right")

    for f in health.followers:
        ratio = f.success_ratio
        table.add_row(
            str(f.follower_id),
            f.name,
            "on" if f.copying_enabled else "[red]off[/red]",
            str(f.filled),
            str(f.failed),
            str(f.skipped),
            f"{ratio:.0%}" if ratio is not None else "-",
        )
    console.print(table)
