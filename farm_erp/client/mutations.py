from __future__ import annotations

import uuid
from enum import Enum
from typing import Any, Callable, Optional

from ..app.logs import json_log
from .api import GENERIC_ERROR, ApiError


class MutationState(str, Enum):
    IDLE = "idle"
    SUBMITTING = "submitting"


class MutationBusy(RuntimeError):
    pass


def log_notifier(level: str, message: str) -> None:
    json_log("error" if level == "error" else "info", "client.mutation", outcome=level, message=message)


class Mutation:
    """
    idle -> submitting -> idle around one server round-trip.

    On success the refetch callbacks run and the notifier gets the success message;
    on failure the notifier gets the server's message and the error propagates.
    Nothing is retried and no local state is rolled back.
    """

    def __init__(
        self,
        action: Callable[..., Any],
        *,
        refetch: Optional[list[Callable[[], Any]]] = None,
        notify: Callable[[str, str], None] = log_notifier,
        success_message: str = "saved",
    ):
        self._action = action
        self._refetch = list(refetch or [])
        self._notify = notify
        self.success_message = success_message
        self.state = MutationState.IDLE
        self.last_error: Optional[str] = None

    @property
    def is_submitting(self) -> bool:
        return self.state is MutationState.SUBMITTING

    def run(self, *args, **kwargs):
        if self.is_submitting:
            raise MutationBusy("mutation already in progress")
        self.state = MutationState.SUBMITTING
        self.last_error = None
        try:
            result = self._action(*args, **kwargs)
        except ApiError as exc:
            self.last_error = exc.detail or GENERIC_ERROR
            self._notify("error", self.last_error)
            raise
        finally:
            self.state = MutationState.IDLE
        for fn in self._refetch:
            fn()
        self._notify("success", self.success_message)
        return result


class PostForm:
    """
    State of one open post dialog. The idempotency key is minted when the form opens
    and resent unchanged on every retry until the form is closed.
    """

    def __init__(self, post: Callable[[dict], Any], **mutation_kwargs):
        self.idempotency_key = str(uuid.uuid4())
        self.mutation = Mutation(post, **mutation_kwargs)
        self.result = None

    def submit(self, payload: dict):
        body = {**payload, "idempotency_key": self.idempotency_key}
        self.result = self.mutation.run(body)
        return self.result
