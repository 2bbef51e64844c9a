"""Notification broker: asks a human when an agent goes quiet and routes the reply back."""

from __future__ import annotations

import logging
import re
import threading
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

from agent_cubicle.config import NotificationSettings
from agent_cubicle.orchestrator.errors import (
    NotificationAccessError,
    NotificationNotFoundError,
    ResponseTimeoutError,
    ValidationError,
)
from agent_cubicle.orchestrator.events import (
    EventBus,
    InstanceWaiting,
    NotificationCreated,
    ResponseReceived,
    ResponseTimedOut,
)
from agent_cubicle.orchestrator.models import (
    AgentTask,
    Notification,
    NotificationType,
    TaskStatus,
    UserResponse,
)
from agent_cubicle.store.base import (
    DurableStore,
    StoreUnavailableError,
    notification_key,
    response_key,
    user_notifications_key,
)
from agent_cubicle.store.common import dumps, loads, utc_now

logger = logging.getLogger(__name__)

AI_WAITING_TITLE = "AI needs your input"
AI_WAITING_FALLBACK_BODY = "AI is waiting for your input"

YES_NO_PATTERN = re.compile(r"\?.*\(y/n\)|yes/no|proceed\?|continue\?", re.IGNORECASE)
MULTI_CHOICE_PATTERN = re.compile(r"\[1\]|\[2\]|\[a\]|\[b\]|choose|select|option", re.IGNORECASE)
OPTION_TOKEN_PATTERN = re.compile(r"\[(\w+)\]")

TaskResolver = Callable[[str], AgentTask | None]


def classify_prompt(output: str) -> list[str] | None:
    """Guess fixed reply options from a prompt; None means free text.

    Best effort only: yes/no questions map to ``["Yes", "No"]`` and
    multiple-choice prompts yield their bracketed tokens.
    """

    if YES_NO_PATTERN.search(output):
        return ["Yes", "No"]
    if MULTI_CHOICE_PATTERN.search(output):
        options = OPTION_TOKEN_PATTERN.findall(output)
        return options or None
    return None


def last_output_line(output: str) -> str:
    lines = [line.strip() for line in output.strip().splitlines() if line.strip()]
    return lines[-1] if lines else AI_WAITING_FALLBACK_BODY


class NotificationBroker:
    """Creates notifications from waiting signals and accepts human replies."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: DurableStore,
        bus: EventBus,
        settings: NotificationSettings | None = None,
        task_resolver: TaskResolver | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.bus = bus
        self.settings = settings or NotificationSettings()
        self.task_resolver = task_resolver
        self._clock = clock
        self._lock = threading.Lock()
        self._timers: dict[str, threading.Timer] = {}
        self._unsubscribe = bus.subscribe(InstanceWaiting, self._on_instance_waiting)

    def create_notification(  # noqa: PLR0913
        self,
        user_id: str,
        task_id: str,
        notification_type: NotificationType,
        title: str,
        body: str,
        *,
        instance_id: str | None = None,
        last_output: str | None = None,
        requires_response: bool = False,
        response_options: list[str] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Notification:
        """Persist a notification with expiry and arm a response timer if a reply is expected."""

        now = self._clock()
        ttl = self.settings.notification_ttl_seconds
        notification = Notification(
            notification_id=str(uuid4()),
            user_id=user_id,
            task_id=task_id,
            type=notification_type,
            title=title,
            body=body,
            requires_response=requires_response,
            created_at=now,
            expires_at=now + timedelta(seconds=ttl),
            instance_id=instance_id,
            last_output=last_output,
            response_options=response_options,
            metadata=dict(metadata or {}),
        )
        self.store.set(
            notification_key(notification.notification_id),
            dumps(notification.to_record()),
            ttl,
        )
        self.store.list_push(user_notifications_key(user_id), notification.notification_id)

        if requires_response:
            timer = threading.Timer(
                ttl,
                self._on_response_timeout,
                args=(notification.notification_id, task_id, instance_id),
            )
            timer.daemon = True
            with self._lock:
                self._timers[notification.notification_id] = timer
            timer.start()

        logger.info(
            "Notification %s (%s) created for user %s, task %s",
            notification.notification_id,
            notification_type.value,
            user_id,
            task_id,
        )
        self.bus.publish(NotificationCreated(notification=notification))
        return notification

    def create_ai_waiting_notification(
        self,
        user_id: str,
        task_id: str,
        instance_id: str,
        last_output: str,
    ) -> Notification:
        return self.create_notification(
            user_id,
            task_id,
            NotificationType.AI_WAITING,
            AI_WAITING_TITLE,
            last_output_line(last_output),
            instance_id=instance_id,
            last_output=last_output,
            requires_response=True,
            response_options=classify_prompt(last_output),
        )

    def handle_user_response(
        self,
        notification_id: str,
        user_id: str,
        response: str,
    ) -> UserResponse:
        """Record a reply and publish it for forwarding to the waiting instance.

        Raises:
            NotificationNotFoundError: unknown or expired-and-evicted notification.
            NotificationAccessError: notification belongs to another user.
            ValidationError: no reply expected, already answered, or bad text.
            ResponseTimeoutError: reply arrived after the notification expired.
        """

        self.validate_response_text(response)
        with self._lock:
            notification = self.get_notification(notification_id)
            if notification is None:
                raise NotificationNotFoundError(f"Notification not found: {notification_id}")
            if notification.user_id != user_id:
                raise NotificationAccessError("Notification belongs to another user.")
            if not notification.requires_response or notification.instance_id is None:
                raise ValidationError("This notification does not require a response.")
            if notification.expires_at <= self._clock():
                raise ResponseTimeoutError(f"Notification {notification_id} has expired.")
            if self.store.get(response_key(notification_id)) is not None:
                raise ValidationError("This notification has already been answered.")

            user_response = UserResponse(
                notification_id=notification_id,
                user_id=user_id,
                task_id=notification.task_id,
                instance_id=notification.instance_id,
                response=response,
                responded_at=self._clock(),
            )
            self.store.set(
                response_key(notification_id),
                dumps(user_response.to_record()),
                self.settings.response_record_ttl_seconds,
            )
            timer = self._timers.pop(notification_id, None)

        if timer is not None:
            timer.cancel()
        logger.info("Response received for notification %s", notification_id)
        self.bus.publish(ResponseReceived(response=user_response))
        return user_response

    def accept_relayed_response(self, notification_id: str) -> UserResponse | None:
        """Publish a reply that another process already validated and stored."""

        raw = self.store.get(response_key(notification_id))
        if raw is None:
            logger.warning("Relayed response for %s is missing from the store", notification_id)
            return None
        user_response = UserResponse.from_record(loads(raw))
        with self._lock:
            timer = self._timers.pop(notification_id, None)
        if timer is not None:
            timer.cancel()
        self.bus.publish(ResponseReceived(response=user_response))
        return user_response

    def validate_response_text(self, response: str) -> None:
        if not response.strip():
            raise ValidationError("Response must not be empty.")
        if len(response) > self.settings.max_response_chars:
            raise ValidationError(
                f"Response must be at most {self.settings.max_response_chars} characters.",
            )

    def get_user_notifications(self, user_id: str, limit: int = 10) -> list[Notification]:
        """Unexpired notifications for the user, newest first. Expired ids are pruned."""

        now = self._clock()
        inbox_key = user_notifications_key(user_id)
        notifications: list[Notification] = []
        for notification_id in reversed(self.store.list_range(inbox_key, 0, -1)):
            if len(notifications) >= limit:
                break
            notification = self.get_notification(notification_id)
            if notification is None or notification.expires_at <= now:
                self.store.list_remove(inbox_key, notification_id)
                continue
            notifications.append(notification)
        return notifications

    def get_notification(
        self,
        notification_id: str,
        user_id: str | None = None,
    ) -> Notification | None:
        raw = self.store.get(notification_key(notification_id))
        if raw is None:
            return None
        notification = Notification.from_record(loads(raw))
        if user_id is not None and notification.user_id != user_id:
            return None
        return notification

    def mark_as_read(self, notification_id: str, user_id: str) -> None:
        """Remove the notification from the user's inbox; the record itself expires on its own."""

        if self.get_notification(notification_id, user_id=user_id) is None:
            raise NotificationNotFoundError(f"Notification not found: {notification_id}")
        self.store.list_remove(user_notifications_key(user_id), notification_id)

    def get_response_queue(self) -> list[UserResponse]:
        responses = []
        for key in self.store.keys("response:*"):
            raw = self.store.get(key)
            if raw is not None:
                responses.append(UserResponse.from_record(loads(raw)))
        return sorted(responses, key=lambda item: item.responded_at)

    def close(self) -> None:
        self._unsubscribe()
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()

    def _on_instance_waiting(self, event: InstanceWaiting) -> None:
        task = self.task_resolver(event.instance_id) if self.task_resolver else None
        if task is None or task.status != TaskStatus.PROCESSING:
            logger.debug("Ignoring waiting signal from unbound instance %s", event.instance_id)
            return
        if event.task_id is not None and event.task_id != task.task_id:
            return
        try:
            self.create_ai_waiting_notification(
                task.user_id,
                task.task_id,
                event.instance_id,
                event.last_output,
            )
        except StoreUnavailableError as error:
            logger.warning("Could not create notification for task %s: %s", task.task_id, error)

    def _on_response_timeout(
        self,
        notification_id: str,
        task_id: str,
        instance_id: str | None,
    ) -> None:
        with self._lock:
            if self._timers.pop(notification_id, None) is None:
                return
        logger.warning("No response to notification %s before expiry", notification_id)
        self.bus.publish(
            ResponseTimedOut(
                notification_id=notification_id,
                task_id=task_id,
                instance_id=instance_id,
                code=ResponseTimeoutError.code,
            ),
        )
