import pytest

from notifications import NotificationType, PreferenceGate, Preferences
from notifications.preferences import destination_for, is_enabled, skip_reason


FULL = Preferences(
    user_id="user-1",
    email_address="user@example.com",
    phone_number=" +15550001111 ",
    push_token="device-token",
)


@pytest.mark.parametrize(
    "kind,expected",
    [
        (NotificationType.EMAIL, "user@example.com"),
        (NotificationType.SMS, "+15550001111"),
        (NotificationType.PUSH, "device-token"),
        (NotificationType.IN_APP, "user-1"),
    ],
)
def test_destination_per_channel(kind, expected):
    assert destination_for(kind, FULL) == expected
    assert is_enabled(kind, FULL)


def test_flag_off_disables_channel():
    prefs = Preferences(user_id="user-1", push_enabled=False, push_token="device-token")

    assert not is_enabled(NotificationType.PUSH, prefs)
    assert skip_reason(NotificationType.PUSH, prefs) == "User has disabled push notifications"


def test_blank_destination_disables_channel():
    prefs = Preferences(user_id="user-1", email_address="   ")

    assert destination_for(NotificationType.EMAIL, prefs) is None
    assert not is_enabled(NotificationType.EMAIL, prefs)
    assert skip_reason(NotificationType.EMAIL, prefs) == "No email address configured for user"


def test_in_app_needs_no_address():
    prefs = Preferences(user_id="user-1")

    assert is_enabled(NotificationType.IN_APP, prefs)
    assert not is_enabled(NotificationType.IN_APP, Preferences(user_id="user-1", in_app_enabled=False))


@pytest.mark.asyncio
async def test_gate_reads_store(store, user_prefs):
    gate = PreferenceGate(store)

    assert await gate.get("user-1") == user_prefs
    assert await gate.get("nobody") is None
