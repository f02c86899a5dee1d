"""
Gated interactions: the gate runs before any interaction logic.
"""
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from models import InteractionAction, InterestOutcome, NotificationType
from services.errors import NotFoundError, PolicyDenied, ValidationError
from services.interactions import InteractionService
from services.match_coordinator import InterestResult


def _make_gate(denied_reason=None):
    gate = MagicMock()
    if denied_reason:
        gate.enforce = AsyncMock(side_effect=PolicyDenied(denied_reason))
    else:
        gate.enforce = AsyncMock(return_value=({}, {}))
    return gate


def _make_coordinator(match=None):
    coordinator = MagicMock()
    coordinator.record_interest = AsyncMock(
        return_value=InterestResult(outcome=InterestOutcome.INTEREST_RECORDED, target_user_id="u2")
    )
    coordinator.get_match = AsyncMock(return_value=match)
    return coordinator


def _make_chats(thread=None):
    chats = MagicMock()
    chats.get_thread = AsyncMock(return_value=thread)
    chats.ensure_thread = AsyncMock(return_value=thread or {"chat_id": "c1", "participants": ["u1", "u2"]})
    chats.list_messages = AsyncMock(return_value=[{"message_id": "msg1", "chat_id": "c1"}])
    chats.add_message = AsyncMock(side_effect=lambda chat_id, sender, content: {
        "message_id": "msg1", "chat_id": chat_id, "sender_id": sender, "content": content,
    })
    return chats


def _make_sink():
    sink = MagicMock()
    sink.enqueue = AsyncMock(return_value=True)
    return sink


def _make_db(photo=None, newly_liked=True):
    db = MagicMock()
    db.photos.find_one = AsyncMock(side_effect=[photo, {"like_count": 3}])
    db.photos.update_one = AsyncMock(return_value=MagicMock(modified_count=1 if newly_liked else 0))
    return db


THREAD = {"chat_id": "c1", "participants": ["u1", "u2"]}


@pytest.mark.asyncio
async def test_like_profile_denied_never_records_interest():
    coordinator = _make_coordinator()
    service = InteractionService(_make_gate("GENDER_MISMATCH"), coordinator, _make_chats(), _make_sink())

    with pytest.raises(PolicyDenied):
        await service.like_profile("u1", "u2")

    coordinator.record_interest.assert_not_called()


@pytest.mark.asyncio
async def test_like_profile_allowed_records_interest():
    gate, coordinator = _make_gate(), _make_coordinator()
    service = InteractionService(gate, coordinator, _make_chats(), _make_sink())

    result = await service.like_profile("u1", "u2")

    assert result.outcome == InterestOutcome.INTEREST_RECORDED
    assert gate.enforce.call_args[0][:3] == ("u1", InteractionAction.LIKE_PROFILE, "u2")


@pytest.mark.asyncio
async def test_like_photo_notifies_owner_once():
    sink = _make_sink()
    gate = _make_gate()
    service = InteractionService(gate, _make_coordinator(), _make_chats(), sink)
    mock_db = _make_db(photo={"photo_id": "ph1", "owner_id": "u2"})

    with patch("services.interactions.database.get_db", return_value=mock_db):
        result = await service.like_photo("u1", "ph1")

    assert result == {"photo_id": "ph1", "like_count": 3, "already_liked": False}
    assert gate.enforce.call_args[0][:3] == ("u1", InteractionAction.LIKE_PHOTO, "u2")
    args, kwargs = sink.enqueue.call_args
    assert args[:2] == ("u2", NotificationType.PHOTO_LIKE)
    assert kwargs["idempotency_key"] == "photo_like:ph1:u1"
    query = mock_db.photos.update_one.call_args[0][0]
    assert query == {"photo_id": "ph1", "liked_by": {"$ne": "u1"}}


@pytest.mark.asyncio
async def test_repeated_photo_like_is_silent():
    sink = _make_sink()
    service = InteractionService(_make_gate(), _make_coordinator(), _make_chats(), sink)
    mock_db = _make_db(photo={"photo_id": "ph1", "owner_id": "u2"}, newly_liked=False)

    with patch("services.interactions.database.get_db", return_value=mock_db):
        result = await service.like_photo("u1", "ph1")

    assert result["already_liked"] is True
    sink.enqueue.assert_not_called()


@pytest.mark.asyncio
async def test_own_photo_like_rejected():
    gate = _make_gate()
    service = InteractionService(gate, _make_coordinator(), _make_chats(), _make_sink())
    mock_db = _make_db(photo={"photo_id": "ph1", "owner_id": "u1"})

    with patch("services.interactions.database.get_db", return_value=mock_db):
        with pytest.raises(ValidationError):
            await service.like_photo("u1", "ph1")

    gate.enforce.assert_not_called()


@pytest.mark.asyncio
async def test_missing_photo_not_found():
    service = InteractionService(_make_gate(), _make_coordinator(), _make_chats(), _make_sink())

    with patch("services.interactions.database.get_db", return_value=_make_db(photo=None)):
        with pytest.raises(NotFoundError):
            await service.like_photo("u1", "nope")


@pytest.mark.asyncio
async def test_initiate_chat_requires_match():
    chats = _make_chats()
    service = InteractionService(_make_gate(), _make_coordinator(match=None), chats, _make_sink())

    with pytest.raises(NotFoundError):
        await service.initiate_chat("u1", "u2")

    chats.ensure_thread.assert_not_called()


@pytest.mark.asyncio
async def test_initiate_chat_returns_match_thread():
    match = {"match_id": "m1", "match_key": "u1:u2", "user_a": "u1", "user_b": "u2", "chat_id": "c1"}
    service = InteractionService(_make_gate(), _make_coordinator(match=match), _make_chats(THREAD), _make_sink())

    thread = await service.initiate_chat("u1", "u2")

    assert thread["chat_id"] == "c1"


@pytest.mark.asyncio
async def test_initiate_chat_without_subscription_denied():
    coordinator = _make_coordinator(match={"match_id": "m1"})
    service = InteractionService(_make_gate("SUBSCRIPTION_REQUIRED"), coordinator, _make_chats(), _make_sink())

    with pytest.raises(PolicyDenied) as exc:
        await service.initiate_chat("u1", "u2")

    assert exc.value.code == "SUBSCRIPTION_REQUIRED"
    coordinator.get_match.assert_not_called()


@pytest.mark.asyncio
async def test_send_message_gated_against_other_participant():
    gate, sink = _make_gate(), _make_sink()
    service = InteractionService(gate, _make_coordinator(), _make_chats(THREAD), sink)

    message = await service.send_message("u1", "c1", "Hi there")

    assert message["content"] == "Hi there"
    assert gate.enforce.call_args[0][:3] == ("u1", InteractionAction.SEND_MESSAGE, "u2")
    args, _ = sink.enqueue.call_args
    assert args[:2] == ("u2", NotificationType.NEW_MESSAGE)


@pytest.mark.asyncio
async def test_send_message_denied_stores_nothing():
    chats = _make_chats(THREAD)
    service = InteractionService(_make_gate("SUBSCRIPTION_REQUIRED"), _make_coordinator(), chats, _make_sink())

    with pytest.raises(PolicyDenied):
        await service.send_message("u1", "c1", "Hi")

    chats.add_message.assert_not_called()


@pytest.mark.asyncio
async def test_send_message_outside_thread_not_found():
    service = InteractionService(_make_gate(), _make_coordinator(), _make_chats(THREAD), _make_sink())

    with pytest.raises(NotFoundError):
        await service.send_message("u9", "c1", "Hi")


@pytest.mark.asyncio
@pytest.mark.parametrize("content", ["", "   ", "x" * 2001])
async def test_send_message_content_validated(content):
    service = InteractionService(_make_gate(), _make_coordinator(), _make_chats(THREAD), _make_sink())

    with pytest.raises(ValidationError):
        await service.send_message("u1", "c1", content)


@pytest.mark.asyncio
async def test_list_messages_for_participant():
    chats = _make_chats(THREAD)
    service = InteractionService(_make_gate(), _make_coordinator(), chats, _make_sink())

    messages = await service.list_messages("u2", "c1", limit=50)

    assert messages == [{"message_id": "msg1", "chat_id": "c1"}]
    chats.list_messages.assert_awaited_once_with("c1", limit=50)


@pytest.mark.asyncio
async def test_list_messages_hidden_from_outsiders():
    chats = _make_chats(THREAD)
    service = InteractionService(_make_gate(), _make_coordinator(), chats, _make_sink())

    with pytest.raises(NotFoundError):
        await service.list_messages("u3", "c1")

    chats.list_messages.assert_not_called()
