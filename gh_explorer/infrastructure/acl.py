from typing import Any, Dict, Type, TypeVar
from pydantic import BaseModel, ValidationError

from gh_explorer.domain.exceptions import InvalidPayloadError
from gh_explorer.domain.models import Account, Event, Repository

ModelT = TypeVar("ModelT", bound=BaseModel)


class GitHubTranslator:
    """
    Anti-corruption layer that translates raw GitHub REST JSON into immutable domain models.
    """

    @staticmethod
    def _validate(model: Type[ModelT], raw: Dict[str, Any]) -> ModelT:
        try:
            return model.model_validate(raw)
        except ValidationError as e:
            raise InvalidPayloadError(f"Malformed {model.__name__} payload: {e.error_count()} invalid field(s).") from e

    @staticmethod
    def to_account(raw_user: Dict[str, Any]) -> Account:
        return GitHubTranslator._validate(Account, raw_user)

    @staticmethod
    def to_repository(raw_repo: Dict[str, Any]) -> Repository:
        # GitHub sends "topics": null for some mirrors
        if raw_repo.get('topics') is None:
            raw_repo = {**raw_repo, 'topics': []}
        return GitHubTranslator._validate(Repository, raw_repo)

    @staticmethod
    def to_event(raw_event: Dict[str, Any]) -> Event:
        """
        Transforms a raw public event into an Event.

        Args:
            raw_event (Dict[str, Any]): The raw JSON object from the events feed.

        Returns:
            Event: The domain model instance representing the event.

        Raises:
            InvalidPayloadError: If created_at is missing or is not a valid timestamp.
        """
        if not raw_event.get('created_at'):
            raise InvalidPayloadError(f"created_at is required to build Event {raw_event.get('id', '?')}.")
        if raw_event.get('payload') is None:
            raw_event = {**raw_event, 'payload': {}}
        return GitHubTranslator._validate(Event, raw_event)
