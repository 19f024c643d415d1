from datetime import datetime
from typing import Dict, Any, List, Optional
from pydantic import BaseModel, Field, ConfigDict


class EventType:
    """Event type tags the contribution statistics care about. Other tags pass through untouched."""
    PUSH = "PushEvent"
    PULL_REQUEST = "PullRequestEvent"
    ISSUES = "IssuesEvent"
    CREATE = "CreateEvent"
    FORK = "ForkEvent"
    WATCH = "WatchEvent"


class Account(BaseModel):
    """
    Immutable model of a GitHub user or organization.
    The extended fields are only populated by the single-account endpoint.
    """
    model_config = ConfigDict(frozen=True)

    id: int = Field(..., description="The numeric account ID")
    login: str = Field(..., description="Handle of the account, case-insensitive on GitHub")
    html_url: str = Field(..., description="Profile URL")
    avatar_url: str = Field(..., description="Avatar image URL")
    type: str = Field("User", description="Either 'User' or 'Organization'")
    name: Optional[str] = None
    bio: Optional[str] = None
    public_repos: Optional[int] = Field(None, ge=0)
    followers: Optional[int] = Field(None, ge=0)
    following: Optional[int] = Field(None, ge=0)

    @property
    def is_organization(self) -> bool:
        return self.type == "Organization"


class Repository(BaseModel):
    """Immutable model of a repository as returned by the user repository listing."""
    model_config = ConfigDict(frozen=True)

    id: int = Field(..., description="The numeric repository ID")
    name: str = Field(..., description="Name of the repository")
    full_name: str = Field(..., description="owner/name")
    description: Optional[str] = None
    html_url: str
    stargazers_count: int = Field(0, ge=0)
    watchers_count: int = Field(0, ge=0)
    forks_count: int = Field(0, ge=0)
    language: Optional[str] = None
    updated_at: datetime = Field(..., description="Timestamp of the last update")
    topics: List[str] = Field(default_factory=list)
    private: bool = False
    fork: bool = False


class EventRepository(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    url: str


class Event(BaseModel):
    """
    Immutable model of a public GitHub event.
    Only the PushEvent payload is ever interpreted; everything else is kept opaque.
    """
    model_config = ConfigDict(frozen=True)

    id: str
    type: str = Field(..., description="Open-ended event tag, e.g. 'PushEvent'")
    created_at: datetime
    repo: Optional[EventRepository] = None
    payload: Dict[str, Any] = Field(default_factory=dict)


class ContributionSummary(BaseModel):
    """Statistics derived from events and repositories over a trailing one-year window."""
    model_config = ConfigDict(frozen=True)

    total_commits: int = Field(0, ge=0)
    total_pull_requests: int = Field(0, ge=0)
    total_issues: int = Field(0, ge=0)
    total_repositories: int = Field(0, ge=0)
    recent_activity: List[Event] = Field(default_factory=list, max_length=10)
