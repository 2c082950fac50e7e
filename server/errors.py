"""Domain errors raised by the check-in engine and mapped to HTTP responses in api.py."""

from typing import Optional


class CheckinError(Exception):
    """Base class for every error the engine raises on purpose."""


class InvalidCoordinate(CheckinError):
    """A latitude/longitude is non-finite, non-numeric or out of range."""


class GeolocationNotConfigured(CheckinError):
    """The tag has no latitude/longitude, so no distance can be computed."""


class NotFound(CheckinError):
    """Unknown tag, user or schedule (or one that may not be used for check-in)."""


class PersistenceUnavailable(CheckinError):
    """The database could not be reached; the current tick or request is aborted."""


class ScheduleConfigError(CheckinError):
    """A schedule's day set, time window or timezone cannot be evaluated."""


class AlreadyCheckedInToday(CheckinError):
    """The user already has a manual check-in on this tag today.

    Carries the existing check-in and the tag's redirect so a client can still
    send the user on to wherever a successful scan would have taken them.
    """

    def __init__(
        self,
        checkin_id: int,
        tag_uid: str,
        redirect_url: Optional[str] = None,
    ):
        super().__init__(f"User already checked in to tag {tag_uid} today")
        self.checkin_id = checkin_id
        self.tag_uid = tag_uid
        self.redirect_url = redirect_url
