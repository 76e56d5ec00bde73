"""
Decision engine errors.

Domain errors are local validation or state-conflict failures. They are never
retried automatically and each carries a stable ``code``, the HTTP status the
API answers with, and a message specific enough to show to the user.

Transient failures (a store that cannot be reached, a dropped realtime
connection) are a separate branch, ``ServiceUnavailableError``, so callers
can tell "try again" apart from "this will never work".
"""
from __future__ import annotations

from typing import Any


class DecisionError(Exception):
    code = "decision_error"
    status_code = 400
    default_message = "The decision could not be processed."

    def __init__(self, message: str | None = None, **details: Any) -> None:
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.message, "code": self.code, "retryable": False}
        if self.details:
            body["details"] = self.details
        return body


class EmptyCandidateSetError(DecisionError):
    code = "empty_candidate_set"
    status_code = 422
    default_message = "No restaurants in this collection to choose from!"


class NoWinnerError(DecisionError):
    code = "no_winner"
    status_code = 409
    default_message = "There are no ballots to count."


class NoVotesError(DecisionError):
    code = "no_votes"
    status_code = 409
    default_message = "No votes have been submitted yet."


class NotParticipantError(DecisionError):
    code = "not_participant"
    status_code = 403
    default_message = "You are not a participant in this decision."


class NotActiveError(DecisionError):
    code = "not_active"
    status_code = 409
    default_message = "This decision is no longer accepting votes."


class AlreadyResolvedError(DecisionError):
    code = "already_resolved"
    status_code = 409
    default_message = "This decision has already been resolved."


class InvalidRankingsError(DecisionError):
    code = "invalid_rankings"
    status_code = 422
    default_message = "Your rankings are not valid."


class NotAuthorizedError(DecisionError):
    code = "not_authorized"
    status_code = 403
    default_message = "Only group admins can complete or close this decision."


class ExpiredError(DecisionError):
    code = "expired"
    status_code = 410
    default_message = "The voting deadline for this decision has passed."


class RestaurantNotInCollectionError(DecisionError):
    code = "restaurant_not_in_collection"
    status_code = 422
    default_message = "That restaurant is not part of this collection."


class DecisionNotFoundError(DecisionError):
    code = "decision_not_found"
    status_code = 404
    default_message = "Decision not found."


class CollectionNotFoundError(DecisionError):
    code = "collection_not_found"
    status_code = 404
    default_message = "Collection not found."


class GroupNotFoundError(DecisionError):
    code = "group_not_found"
    status_code = 404
    default_message = "Group not found."


class ServiceUnavailableError(Exception):
    """A retryable persistence or transport failure."""

    code = "service_unavailable"
    status_code = 503

    def __init__(self, message: str = "The decision service is temporarily unavailable. Please try again.") -> None:
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.message, "code": self.code, "retryable": True}
