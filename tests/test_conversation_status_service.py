from autozap.services.conversation_status_service import ConversationStatusService


async def test_update_sets_status(status_service, app_db):
    await status_service.update_status("inst-1", "5511987654321", "waiting_human")
    assert await status_service.get_status("inst-1", "5511987654321") == "waiting_human"


async def test_pending_appointment_marker_is_never_overwritten(status_service, app_db):
    await app_db.set_conversation_status("inst-1", "5511987654321", "pending_appointment:abc")

    result = await status_service.update_status("inst-1", "5511987654321", "closed")

    assert result.status == "pending_appointment:abc"
    assert await status_service.get_status("inst-1", "5511987654321") == "pending_appointment:abc"


async def test_missing_status_defaults_to_active(status_service):
    assert await status_service.get_status("inst-1", "5511000000000") == "active"


async def test_ensure_status_keeps_existing_row(status_service, app_db):
    await app_db.set_conversation_status("inst-1", "5511987654321", "closed")

    ensured = await status_service.ensure_status("inst-1", "5511987654321")

    assert ensured.status == "closed"


def test_pending_appointment_detection():
    assert ConversationStatusService.is_pending_appointment("pending_appointment:1")
    assert not ConversationStatusService.is_pending_appointment("active")
    assert not ConversationStatusService.is_pending_appointment(None)
