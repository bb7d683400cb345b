"""Notification center delivery, unsubscription, and observer failure isolation tests."""

from __future__ import annotations

import pytest

from lists_store.constants import APP_DID_ENTER_BACKGROUND, APP_WILL_TERMINATE
from lists_store.lifecycle.notifications import (
    LIFECYCLE_NOTIFICATIONS,
    Notification,
    NotificationCenter,
    default_notification_center,
)


def test_observers_receive_only_their_notification() -> None:
    center = NotificationCenter()
    terminate: list[Notification] = []
    everything: list[str] = []
    center.add_observer(APP_WILL_TERMINATE, terminate.append)
    center.add_observer(None, lambda notification: everything.append(notification.name))

    center.post(APP_DID_ENTER_BACKGROUND)
    center.post(APP_WILL_TERMINATE, {"reason": "test"})

    assert [item.name for item in terminate] == [APP_WILL_TERMINATE]
    assert terminate[0].user_info == {"reason": "test"}
    assert terminate[0].posted_at.tzinfo is not None
    assert everything == [APP_DID_ENTER_BACKGROUND, APP_WILL_TERMINATE]


def test_remove_observer_stops_delivery() -> None:
    center = NotificationCenter()
    received: list[Notification] = []
    token = center.add_observer(APP_WILL_TERMINATE, received.append)

    assert center.observer_count(APP_WILL_TERMINATE) == 1
    assert center.remove_observer(token) is True
    assert center.remove_observer(token) is False
    center.post(APP_WILL_TERMINATE)

    assert received == []
    assert center.observer_count() == 0


def test_failing_observer_does_not_block_others() -> None:
    center = NotificationCenter()
    received: list[str] = []

    def broken(notification: Notification) -> None:
        raise RuntimeError(f"cannot handle {notification.name}")

    center.add_observer(APP_WILL_TERMINATE, broken)
    center.add_observer(APP_WILL_TERMINATE, lambda notification: received.append("ok"))

    errors = center.post(APP_WILL_TERMINATE)

    assert received == ["ok"]
    assert len(errors) == 1
    assert errors[0].error_type == "RuntimeError"
    assert errors[0].observer.endswith("broken")
    assert center.dispatch_errors() == errors


def test_history_is_bounded_and_filterable() -> None:
    center = NotificationCenter(history_size=2)

    center.post(APP_WILL_TERMINATE)
    center.post(APP_DID_ENTER_BACKGROUND)
    center.post(APP_DID_ENTER_BACKGROUND)

    assert [item.name for item in center.history()] == [APP_DID_ENTER_BACKGROUND] * 2
    assert center.history(name=APP_WILL_TERMINATE) == ()


@pytest.mark.parametrize("name", ["", "   ", 3])
def test_invalid_notification_names_are_rejected(name: object) -> None:
    with pytest.raises(ValueError):
        NotificationCenter().post(name)  # type: ignore[arg-type]


def test_invalid_arguments_are_rejected() -> None:
    with pytest.raises(ValueError):
        NotificationCenter(history_size=0)
    with pytest.raises(ValueError):
        NotificationCenter().add_observer(APP_WILL_TERMINATE, "not callable")  # type: ignore[arg-type]
    with pytest.raises(ValueError):
        NotificationCenter().remove_observer(True)


def test_default_center_is_shared() -> None:
    assert default_notification_center() is default_notification_center()
    assert LIFECYCLE_NOTIFICATIONS == {APP_WILL_TERMINATE, APP_DID_ENTER_BACKGROUND}
