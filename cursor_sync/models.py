"""Pydantic models for usage records, derived statistics and sync state."""

import uuid
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator

from cursor_sync.dates import day_key


class TeamMember(BaseModel):
    """Represents a team member in the Cursor organization."""

    name: str = ""
    email: str
    role: Optional[str] = None

    model_config = ConfigDict(extra="ignore")


class DailyUsageRecord(BaseModel):
    """One user's usage counters for one day, as returned by the usage API."""

    email: str
    date: int  # epoch milliseconds
    is_active: bool = Field(default=False, alias="isActive")
    total_lines_added: int = Field(default=0, ge=0, alias="totalLinesAdded")
    total_lines_deleted: int = Field(default=0, ge=0, alias="totalLinesDeleted")
    accepted_lines_added: int = Field(default=0, ge=0, alias="acceptedLinesAdded")
    accepted_lines_deleted: int = Field(default=0, ge=0, alias="acceptedLinesDeleted")
    total_applies: int = Field(default=0, ge=0, alias="totalApplies")
    total_accepts: int = Field(default=0, ge=0, alias="totalAccepts")
    total_rejects: int = Field(default=0, ge=0, alias="totalRejects")
    total_tabs_shown: int = Field(default=0, ge=0, alias="totalTabsShown")
    total_tabs_accepted: int = Field(default=0, ge=0, alias="totalTabsAccepted")
    composer_requests: int = Field(default=0, ge=0, alias="composerRequests")
    chat_requests: int = Field(default=0, ge=0, alias="chatRequests")
    agent_requests: int = Field(default=0, ge=0, alias="agentRequests")
    cmdk_usages: int = Field(default=0, ge=0, alias="cmdkUsages")
    subscription_included_reqs: int = Field(default=0, ge=0, alias="subscriptionIncludedReqs")
    api_key_reqs: int = Field(default=0, ge=0, alias="apiKeyReqs")
    usage_based_reqs: int = Field(default=0, ge=0, alias="usageBasedReqs")
    bugbot_usages: int = Field(default=0, ge=0, alias="bugbotUsages")
    most_used_model: Optional[str] = Field(default=None, alias="mostUsedModel")
    apply_most_used_extension: Optional[str] = Field(default=None, alias="applyMostUsedExtension")
    tab_most_used_extension: Optional[str] = Field(default=None, alias="tabMostUsedExtension")
    client_version: Optional[str] = Field(default=None, alias="clientVersion")

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    @field_validator("date", mode="before")
    @classmethod
    def parse_date(cls, v):
        """Accept epoch milliseconds as int, float or numeric string."""
        if isinstance(v, str):
            return int(v)
        if isinstance(v, float):
            return int(v)
        return v

    @property
    def day(self) -> str:
        """UTC calendar day (``YYYY-MM-DD``) this record belongs to."""
        return day_key(self.date)


class DailyUsagePeriod(BaseModel):
    """Period information for daily usage data."""

    start_date: int = Field(alias="startDate")
    end_date: int = Field(alias="endDate")

    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class DailyUsageResponse(BaseModel):
    """Response envelope of the daily usage endpoint."""

    data: List[DailyUsageRecord]
    period: Optional[DailyUsagePeriod] = None

    model_config = ConfigDict(extra="ignore")


class DailySnapshot(BaseModel):
    """Stored counters for one user and one calendar day."""

    user_email: str
    date: str
    is_active: bool = False
    lines_added: int = Field(default=0, ge=0)
    agent_requests: int = Field(default=0, ge=0)
    chat_requests: int = Field(default=0, ge=0)
    composer_requests: int = Field(default=0, ge=0)
    tab_accepts: int = Field(default=0, ge=0)
    total_tabs_shown: int = Field(default=0, ge=0)
    total_accepts: int = Field(default=0, ge=0)
    total_applies: int = Field(default=0, ge=0)
    bugbot_usages: int = Field(default=0, ge=0)
    most_used_model: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)

    @classmethod
    def from_record(cls, record: DailyUsageRecord) -> "DailySnapshot":
        return cls(
            user_email=record.email,
            date=record.day,
            is_active=record.is_active,
            lines_added=record.accepted_lines_added,
            agent_requests=record.agent_requests,
            chat_requests=record.chat_requests,
            composer_requests=record.composer_requests,
            tab_accepts=record.total_tabs_accepted,
            total_tabs_shown=record.total_tabs_shown,
            total_accepts=record.total_accepts,
            total_applies=record.total_applies,
            bugbot_usages=record.bugbot_usages,
            most_used_model=record.most_used_model,
        )


class UserStats(BaseModel):
    """Lifetime statistics for one user, derived from all of their snapshots."""

    email: str
    total_active_days: int = 0
    max_consecutive_days: int = 0
    current_streak: int = 0
    total_lines_added: int = 0
    total_agent_requests: int = 0
    total_chat_requests: int = 0
    total_composer_requests: int = 0
    total_tab_accepts: int = 0
    total_bugbot_usages: int = 0
    total_accepts: int = 0
    total_applies: int = 0
    best_single_day_lines: int = 0
    best_single_day_agent: int = 0
    total_acceptance_rate: float = 0.0
    all_rounder_days: int = 0
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class TeamStats(BaseModel):
    """Team-wide statistics, derived from every user's stats and snapshots."""

    id: str = "team"
    total_members: int = 0
    total_team_lines: int = 0
    total_team_agent_requests: int = 0
    total_team_chat_requests: int = 0
    total_team_composer_requests: int = 0
    total_team_tab_accepts: int = 0
    total_team_active_days: int = 0
    members_with_streaks: int = 0
    best_team_day_lines: int = 0
    best_team_day_date: Optional[str] = None
    max_active_members_in_day: int = 0
    members_with_first_steps: int = 0
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    @property
    def full_squad_days(self) -> int:
        """1 once every member has been active on the same day, else 0."""
        if self.total_members == 0:
            return 0
        return int(self.max_active_members_in_day >= self.total_members)

    @property
    def adoption_complete(self) -> int:
        """1 once every member has unlocked First Steps, else 0."""
        if self.total_members == 0:
            return 0
        return int(self.members_with_first_steps >= self.total_members)


class LeaderboardEntry(BaseModel):
    """Per-user leaderboard metrics over a time window."""

    email: str
    name: str
    total_activity_score: int = 0
    accepted_lines_added: int = 0
    total_accepts: int = 0
    total_applies: int = 0
    chat_requests: int = 0
    composer_requests: int = 0
    agent_requests: int = 0
    total_tabs_accepted: int = 0
    acceptance_rate: float = 0.0
    active_days_count: int = 0
    most_used_model: str = "N/A"


class NewAchievements(BaseModel):
    """Achievement ids unlocked during one sync run."""

    individual: List[str] = Field(default_factory=list)
    team: List[str] = Field(default_factory=list)


class LastSyncResult(BaseModel):
    processed: int = 0
    new_achievements: NewAchievements = Field(default_factory=NewAchievements, alias="newAchievements")

    model_config = ConfigDict(populate_by_name=True)


SyncStatus = Literal["idle", "running", "error"]


class SyncMetadata(BaseModel):
    """Sync bookkeeping, stored as JSON in the key-value store."""

    sync_status: SyncStatus = Field(default="idle", alias="syncStatus")
    last_sync_at: Optional[datetime] = Field(default=None, alias="lastSyncAt")
    last_sync_date: Optional[str] = Field(default=None, alias="lastSyncDate")
    error_message: Optional[str] = Field(default=None, alias="errorMessage")
    data_collection_start_date: Optional[str] = Field(default=None, alias="dataCollectionStartDate")
    oldest_data_date: Optional[str] = Field(default=None, alias="oldestDataDate")
    backfill_resume_before: Optional[str] = Field(default=None, alias="backfillResumeBefore")
    last_sync_result: Optional[LastSyncResult] = Field(default=None, alias="lastSyncResult")

    model_config = ConfigDict(populate_by_name=True)


class SyncLock(BaseModel):
    """Body of the lock entry; ``expires_at`` mirrors the key-value TTL.

    ``token`` identifies the holder so a run only ever releases its own lock.
    """

    token: str = Field(default_factory=lambda: uuid.uuid4().hex)
    acquired_at: int = Field(alias="acquiredAt")
    expires_at: int = Field(alias="expiresAt")

    model_config = ConfigDict(populate_by_name=True)


class CanRunSync(BaseModel):
    can_run: bool
    reason: Optional[str] = None
    blocked_by: Optional[Literal["lock", "rate-limit"]] = None


class SyncResult(BaseModel):
    """Outcome of one orchestrator entry point. Never raised, always returned."""

    success: bool
    processed: int = 0
    new_achievements: NewAchievements = Field(default_factory=NewAchievements)
    error: Optional[str] = None
    skipped: bool = False
    reason: Optional[str] = None
    blocked_by: Optional[Literal["lock", "rate-limit"]] = None
    precondition_failed: bool = False
    data_from: Optional[str] = None
    data_to: Optional[str] = None

    @classmethod
    def skip(cls, reason: str, blocked_by: Optional[str] = None) -> "SyncResult":
        return cls(success=False, skipped=True, reason=reason, blocked_by=blocked_by)

    @classmethod
    def failure(cls, error: str, precondition_failed: bool = False) -> "SyncResult":
        return cls(success=False, error=error, precondition_failed=precondition_failed)

    def to_response(self) -> Dict[str, Any]:
        """JSON body for HTTP callers."""
        if self.skipped:
            return {"skipped": True, "reason": self.reason}
        if not self.success:
            return {"error": self.error or "Sync failed"}
        return {
            "success": True,
            "processed": self.processed,
            "newAchievements": self.new_achievements.model_dump(),
        }
