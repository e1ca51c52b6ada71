"""Achievement rule tables and the engine that records unlocks."""

import logging
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Literal, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field

from cursor_sync.dates import utc_now

logger = logging.getLogger(__name__)

AchievementTier = Literal["bronze", "silver", "gold", "legendary"]
AchievementKind = Literal["individual", "team"]


class Achievement(BaseModel):
    """A threshold rule over one attribute of a stats snapshot."""

    id: str
    name: str
    description: str
    category: str
    kind: AchievementKind
    tier: AchievementTier
    metric: str
    threshold: float = Field(gt=0)

    model_config = ConfigDict(frozen=True)

    def value(self, stats) -> float:
        return getattr(stats, self.metric)

    def is_satisfied(self, stats) -> bool:
        return self.value(stats) >= self.threshold

    def progress(self, stats) -> float:
        """Percentage towards the threshold, clamped to [0, 100]."""
        return min(self.value(stats) / self.threshold * 100, 100.0)


def _individual(id, name, description, category, tier, metric, threshold):
    return Achievement(
        id=id, name=name, description=description, category=category,
        kind="individual", tier=tier, metric=metric, threshold=threshold,
    )


def _team(id, name, description, category, tier, metric, threshold):
    return Achievement(
        id=id, name=name, description=description, category=category,
        kind="team", tier=tier, metric=metric, threshold=threshold,
    )


INDIVIDUAL_ACHIEVEMENTS: List[Achievement] = [
    _individual("first-steps", "First Steps", "Complete your first active day with Cursor",
                "getting-started", "bronze", "total_active_days", 1),
    _individual("week-warrior", "Week Warrior", "Stay active for 7 consecutive days",
                "streaks", "silver", "max_consecutive_days", 7),
    _individual("fortnight-fighter", "Fortnight Fighter", "Stay active for 14 consecutive days",
                "streaks", "silver", "max_consecutive_days", 14),
    _individual("monthly-master", "Monthly Master", "Stay active for 30 consecutive days",
                "streaks", "gold", "max_consecutive_days", 30),
    _individual("code-generator", "Code Generator", "Generate 1,000 lines of AI-assisted code",
                "productivity", "silver", "total_lines_added", 1_000),
    _individual("prolific-coder", "Prolific Coder", "Generate 10,000 lines of AI-assisted code",
                "productivity", "gold", "total_lines_added", 10_000),
    _individual("code-legend", "Code Legend", "Generate 50,000 lines of AI-assisted code",
                "productivity", "legendary", "total_lines_added", 50_000),
    _individual("agent-apprentice", "Agent Apprentice", "Make 10 agent requests",
                "agent-mode", "bronze", "total_agent_requests", 10),
    _individual("agent-master", "Agent Master", "Make 100 agent requests",
                "agent-mode", "gold", "total_agent_requests", 100),
    _individual("agent-legend", "Agent Legend", "Make 500 agent requests",
                "agent-mode", "legendary", "total_agent_requests", 500),
    _individual("chat-starter", "Chat Starter", "Start 10 chat conversations",
                "chat", "bronze", "total_chat_requests", 10),
    _individual("conversationalist", "Conversationalist", "Have 100 chat conversations",
                "chat", "silver", "total_chat_requests", 100),
    _individual("tab-tapper", "Tab Tapper", "Accept 100 tab completions",
                "tab-completions", "bronze", "total_tab_accepts", 100),
    _individual("tab-master", "Tab Master", "Accept 1,000 tab completions",
                "tab-completions", "silver", "total_tab_accepts", 1_000),
    _individual("composer-beginner", "Composer Beginner", "Use composer 10 times",
                "composer", "bronze", "total_composer_requests", 10),
    _individual("composer-virtuoso", "Composer Virtuoso", "Use composer 100 times",
                "composer", "gold", "total_composer_requests", 100),
    _individual("productive-day", "Productive Day", "Generate 500+ lines in a single day",
                "daily", "silver", "best_single_day_lines", 500),
    _individual("super-productive", "Super Productive", "Generate 1,000+ lines in a single day",
                "daily", "gold", "best_single_day_lines", 1_000),
    _individual("agent-marathon", "Agent Marathon", "Make 50+ agent requests in a single day",
                "daily", "gold", "best_single_day_agent", 50),
    _individual("bug-hunter", "Bug Hunter", "Use BugBot 10 times for code review",
                "quality", "silver", "total_bugbot_usages", 10),
    _individual("all-rounder", "All-Rounder", "Use Chat, Composer, and Agent in one day",
                "versatility", "silver", "all_rounder_days", 1),
]

TEAM_ACHIEVEMENTS: List[Achievement] = [
    _team("team-first-blood", "First Blood", "Team generates first 1,000 lines together",
          "milestones", "bronze", "total_team_lines", 1_000),
    _team("team-powerhouse", "Powerhouse", "Team generates 100,000 lines together",
          "milestones", "gold", "total_team_lines", 100_000),
    _team("team-million-club", "Million Club", "Team generates 1,000,000 lines together",
          "milestones", "legendary", "total_team_lines", 1_000_000),
    _team("full-squad", "Full Squad", "All team members active in one day",
          "collaboration", "gold", "full_squad_days", 1),
    _team("streak-squad", "Streak Squad", "5+ members maintain 7-day streaks",
          "collaboration", "gold", "members_with_streaks", 5),
    _team("agent-army", "Agent Army", "Team makes 1,000 agent requests combined",
          "agent-mode", "silver", "total_team_agent_requests", 1_000),
    _team("chat-champions", "Chat Champions", "Team has 5,000 chat conversations",
          "chat", "silver", "total_team_chat_requests", 5_000),
    _team("composer-collective", "Composer Collective", "Team uses composer 1,000 times",
          "composer", "silver", "total_team_composer_requests", 1_000),
    _team("record-breakers", "Record Breakers", "Team generates 10,000+ lines in one day",
          "daily", "gold", "best_team_day_lines", 10_000),
    _team("adoption-complete", "Full Adoption", "Every team member has earned First Steps",
          "adoption", "legendary", "adoption_complete", 1),
]

ALL_ACHIEVEMENTS: List[Achievement] = INDIVIDUAL_ACHIEVEMENTS + TEAM_ACHIEVEMENTS


def get_achievement(achievement_id: str) -> Optional[Achievement]:
    return next((a for a in ALL_ACHIEVEMENTS if a.id == achievement_id), None)


def achievements_by_category(category: str) -> List[Achievement]:
    return [a for a in ALL_ACHIEVEMENTS if a.category == category]


def achievements_by_kind(kind: AchievementKind) -> List[Achievement]:
    return INDIVIDUAL_ACHIEVEMENTS if kind == "individual" else TEAM_ACHIEVEMENTS


def achievements_by_tier(tier: AchievementTier) -> List[Achievement]:
    return [a for a in ALL_ACHIEVEMENTS if a.tier == tier]


def evaluate(stats, existing_ids: Iterable[str], rules: Sequence[Achievement]) -> List[str]:
    """Ids of rules satisfied by ``stats`` that are not already unlocked."""
    existing = set(existing_ids)
    return [rule.id for rule in rules if rule.id not in existing and rule.is_satisfied(stats)]


def calculate_progress(stats, earned_ids: Iterable[str], rules: Sequence[Achievement]) -> Dict[str, float]:
    earned = set(earned_ids)
    return {rule.id: 100.0 if rule.id in earned else rule.progress(stats) for rule in rules}


class AchievementEngine:
    """Evaluates rule tables and records each unlock exactly once."""

    def __init__(self, store, clock: Callable[[], datetime] = utc_now):
        self._store = store
        self._clock = clock

    async def check_and_award(
        self,
        subject: str,
        stats,
        existing_ids: Iterable[str],
        rules: Sequence[Achievement],
        contributors: Optional[List[str]] = None,
    ) -> List[str]:
        """Record every newly satisfied rule for ``subject``.

        Returns:
            Ids unlocked by this call. Empty when rerun on the same stats.
        """
        awarded = []
        for achievement_id in evaluate(stats, existing_ids, rules):
            if await self._store.record_unlock(subject, achievement_id, self._clock(), contributors):
                awarded.append(achievement_id)

        if awarded:
            logger.info(f"{subject} unlocked {len(awarded)} achievement(s): {', '.join(awarded)}")
        return awarded
