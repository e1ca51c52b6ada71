"""Per-user and team statistics, recomputed from the full snapshot history.

Stats are never patched incrementally. Every recalculation reads all snapshots
for its subject and rebuilds the row from scratch, so replayed syncs,
out-of-order windows and historical backfills cannot double count.
"""

import logging
from collections import defaultdict
from datetime import date, datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from cursor_sync.dates import parse_day, utc_now
from cursor_sync.models import DailySnapshot, TeamStats, UserStats

logger = logging.getLogger(__name__)

# Minimum current streak for a member to count towards "members with streaks"
STREAK_MEMBER_THRESHOLD = 7
FIRST_STEPS_ID = "first-steps"


def calculate_streaks(active_days: Iterable[str]) -> Tuple[int, int]:
    """Return ``(current_streak, max_consecutive_days)`` for a set of active days.

    The current streak is the run of consecutive calendar days ending at the
    most recent active day. A missing day breaks a run exactly like an inactive one.
    """
    days: List[date] = sorted({parse_day(d) for d in active_days})
    if not days:
        return 0, 0

    max_run = run = 1
    for previous, current in zip(days, days[1:]):
        if current - previous == timedelta(days=1):
            run += 1
        else:
            run = 1
        max_run = max(max_run, run)

    # run now holds the length of the run ending at the latest active day
    return run, max_run


def compute_user_stats(
    email: str,
    snapshots: Iterable[DailySnapshot],
    now: Optional[datetime] = None,
) -> UserStats:
    """Rebuild one user's lifetime stats from their snapshots.

    Args:
        email: The user
        snapshots: That user's full snapshot history, in any order
        now: Timestamp stored as ``updated_at``

    Returns:
        UserStats with totals, best days, streaks and the acceptance rate
        (percent, one decimal; 0 when nothing was applied)
    """
    snapshots = list(snapshots)
    stats = UserStats(email=email, updated_at=now or utc_now())
    if not snapshots:
        return stats

    active_days: Set[str] = set()
    for s in snapshots:
        if s.is_active:
            active_days.add(s.date)
        stats.total_lines_added += s.lines_added
        stats.total_agent_requests += s.agent_requests
        stats.total_chat_requests += s.chat_requests
        stats.total_composer_requests += s.composer_requests
        stats.total_tab_accepts += s.tab_accepts
        stats.total_bugbot_usages += s.bugbot_usages
        stats.total_accepts += s.total_accepts
        stats.total_applies += s.total_applies
        stats.best_single_day_lines = max(stats.best_single_day_lines, s.lines_added)
        stats.best_single_day_agent = max(stats.best_single_day_agent, s.agent_requests)
        if s.chat_requests > 0 and s.composer_requests > 0 and s.agent_requests > 0:
            stats.all_rounder_days += 1

    stats.total_active_days = len(active_days)
    stats.current_streak, stats.max_consecutive_days = calculate_streaks(active_days)
    if stats.total_applies > 0:
        stats.total_acceptance_rate = round(stats.total_accepts / stats.total_applies * 100, 1)
    return stats


def compute_team_stats(
    user_stats: Iterable[UserStats],
    snapshots: Iterable[DailySnapshot],
    members_with_first_steps: int = 0,
    now: Optional[datetime] = None,
) -> TeamStats:
    """Rebuild team totals from every member's stats and the raw snapshots.

    Args:
        user_stats: Freshly recomputed stats for every member
        snapshots: All snapshots, used for per-day team figures
        members_with_first_steps: Count of users holding the first-steps unlock
        now: Timestamp stored as ``updated_at``
    """
    user_stats = list(user_stats)
    team = TeamStats(
        total_members=len(user_stats),
        members_with_first_steps=members_with_first_steps,
        updated_at=now or utc_now(),
    )

    for user in user_stats:
        team.total_team_lines += user.total_lines_added
        team.total_team_agent_requests += user.total_agent_requests
        team.total_team_chat_requests += user.total_chat_requests
        team.total_team_composer_requests += user.total_composer_requests
        team.total_team_tab_accepts += user.total_tab_accepts
        team.total_team_active_days += user.total_active_days
        if user.current_streak >= STREAK_MEMBER_THRESHOLD:
            team.members_with_streaks += 1

    lines_by_day: Dict[str, int] = defaultdict(int)
    active_by_day: Dict[str, Set[str]] = defaultdict(set)
    for s in snapshots:
        lines_by_day[s.date] += s.lines_added
        if s.is_active:
            active_by_day[s.date].add(s.user_email)

    # earliest day wins a tie
    for day in sorted(lines_by_day):
        if lines_by_day[day] > team.best_team_day_lines:
            team.best_team_day_lines = lines_by_day[day]
            team.best_team_day_date = day

    team.max_active_members_in_day = max((len(u) for u in active_by_day.values()), default=0)
    return team


class StatsRecalculator:
    """Reads snapshot history, recomputes, and upserts the derived stats rows."""

    def __init__(self, snapshots, stats, achievements, clock: Callable[[], datetime] = utc_now):
        self._snapshots = snapshots
        self._stats = stats
        self._achievements = achievements
        self._clock = clock

    async def recalculate_user_stats(self, email: str) -> UserStats:
        """Recompute and save one user's stats from their whole history.

        Raises:
            StorageError: If reading snapshots or saving the row fails
        """
        history = await self._snapshots.list_snapshots(email)
        stats = compute_user_stats(email, history, now=self._clock())
        await self._stats.save_user_stats(stats)
        logger.debug(
            f"Recalculated stats for {email}: {len(history)} days, "
            f"streak {stats.current_streak}/{stats.max_consecutive_days}"
        )
        return stats

    async def recalculate_team_stats(self) -> TeamStats:
        """Recompute and save the team row. Run after every member's stats are current."""
        users = await self._stats.list_user_stats()
        history = await self._snapshots.list_snapshots()
        first_steps = await self._achievements.count_unlocks(FIRST_STEPS_ID)
        team = compute_team_stats(users, history, first_steps, now=self._clock())
        await self._stats.save_team_stats(team)
        logger.debug(f"Recalculated team stats for {team.total_members} members")
        return team
