"""Leaderboard aggregation of raw daily usage records."""

from typing import Iterable, List

import pandas as pd

from cursor_sync.models import DailyUsageRecord, LeaderboardEntry, TeamMember

# Points per unit of each metric in the activity score
SCORE_WEIGHTS = {
    "accepted_lines_added": 2,
    "total_tabs_accepted": 1,
    "chat_requests": 3,
    "composer_requests": 3,
    "agent_requests": 3,
}

_SUM_COLUMNS = [
    "accepted_lines_added",
    "chat_requests",
    "composer_requests",
    "agent_requests",
    "total_tabs_accepted",
    "total_accepts",
    "total_applies",
]


def aggregate_user_metrics(
    records: Iterable[DailyUsageRecord],
    team_members: Iterable[TeamMember] = (),
) -> List[LeaderboardEntry]:
    """Fold daily usage records into one leaderboard entry per user.

    Args:
        records: Daily usage records, any number per user
        team_members: Members used to resolve display names

    Returns:
        Entries sorted by total activity score, highest first
    """
    rows = [
        {
            "email": r.email,
            "day": r.day,
            "is_active": r.is_active,
            "most_used_model": r.most_used_model or None,
            **{column: getattr(r, column) for column in _SUM_COLUMNS},
        }
        for r in records
    ]
    if not rows:
        return []

    names = {m.email: m.name for m in team_members if m.name}
    df = pd.DataFrame(rows)

    totals = df.groupby("email", sort=False)[_SUM_COLUMNS].sum()
    active_days = df[df["is_active"]].groupby("email")["day"].nunique()

    models = df.dropna(subset=["most_used_model"])
    model_counts = models.groupby(["email", "most_used_model"], sort=False).size()

    entries = []
    for email, row in totals.iterrows():
        score = sum(int(row[column]) * weight for column, weight in SCORE_WEIGHTS.items())

        applies = int(row["total_applies"])
        accepts = int(row["total_accepts"])
        acceptance_rate = round(accepts / applies * 100, 1) if applies > 0 else 0.0

        most_used_model = "N/A"
        if email in model_counts.index.get_level_values(0):
            # idxmax keeps the first model seen on ties
            most_used_model = model_counts.loc[email].idxmax()

        entries.append(LeaderboardEntry(
            email=email,
            name=names.get(email) or email.split("@")[0],
            total_activity_score=score,
            accepted_lines_added=int(row["accepted_lines_added"]),
            total_accepts=accepts,
            total_applies=applies,
            chat_requests=int(row["chat_requests"]),
            composer_requests=int(row["composer_requests"]),
            agent_requests=int(row["agent_requests"]),
            total_tabs_accepted=int(row["total_tabs_accepted"]),
            acceptance_rate=acceptance_rate,
            active_days_count=int(active_days.get(email, 0)),
            most_used_model=most_used_model,
        ))

    return sorted(entries, key=lambda e: e.total_activity_score, reverse=True)
