from datetime import datetime, timedelta, timezone
from typing import List, Optional, Sequence

from gh_explorer.domain.exceptions import InvalidPayloadError
from gh_explorer.domain.models import ContributionSummary, Event, EventType, Repository

CONTRIBUTION_WINDOW = timedelta(days=365)
RECENT_ACTIVITY_LIMIT = 10


def _count_commits(event: Event) -> int:
    # A push without an enumerable commit list still counts as one contribution.
    commits = event.payload.get("commits") if event.payload else None
    if isinstance(commits, list):
        return len(commits)
    return 1


def aggregate(
    events: Sequence[Event],
    repositories: Sequence[Repository],
    now: Optional[datetime] = None,
) -> ContributionSummary:
    """
    Summarizes a user's public activity over the trailing 365 days.

    Events are expected in the reverse-chronological order the events feed
    returns them; that order is kept for the recent activity list.

    Args:
        events: The user's public events.
        repositories: The user's full repository list (not windowed).
        now: Anchor for the window, defaults to the current UTC time.

    Raises:
        InvalidPayloadError: If an event carries a timezone-naive timestamp.
    """
    if now is None:
        now = datetime.now(timezone.utc)
    cutoff = now - CONTRIBUTION_WINDOW

    recent: List[Event] = []
    for event in events:
        if event.created_at.tzinfo is None:
            raise InvalidPayloadError(f"Event {event.id} has a timestamp without a timezone.")
        if event.created_at >= cutoff:
            recent.append(event)

    total_commits = 0
    total_pull_requests = 0
    total_issues = 0
    for event in recent:
        if event.type == EventType.PUSH:
            total_commits += _count_commits(event)
        elif event.type == EventType.PULL_REQUEST:
            total_pull_requests += 1
        elif event.type == EventType.ISSUES:
            total_issues += 1

    return ContributionSummary(
        total_commits=total_commits,
        total_pull_requests=total_pull_requests,
        total_issues=total_issues,
        total_repositories=len(repositories),
        recent_activity=recent[:RECENT_ACTIVITY_LIMIT],
    )
