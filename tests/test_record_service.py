from datetime import datetime

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from autozap.apis.record_api import create_record_api
from autozap.exceptions.app_exception import NotFoundException, ValidationException, ConflictException
from autozap.services.record_service import RecordService, RECORD_RESOURCES


@pytest.fixture
def make_service(log_util, app_db):
    def _make(collection: str) -> RecordService:
        return RecordService(log_util=log_util, app_db=app_db, resource=RECORD_RESOURCES[collection])
    return _make


async def test_create_client_ignores_protected_fields(make_service):
    service = make_service("clients")

    client = await service.create_record("user-1", {
        "name": "Ana", "phone_number": "+55 (11) 98765-4321", "user_id": "someone-else", "id": "forced"
    })

    assert client["user_id"] == "user-1"
    assert client["id"] != "forced"
    assert client["phone_number"] == "5511987654321"


async def test_records_are_scoped_to_their_tenant(make_service):
    service = make_service("clients")
    client = await service.create_record("user-1", {"name": "Ana", "phone_number": "11987654321"})

    with pytest.raises(NotFoundException):
        await service.get_record("user-2", client["id"])
    with pytest.raises(NotFoundException):
        await service.update_record("user-2", client["id"], {"name": "Bia"})
    with pytest.raises(NotFoundException):
        await service.delete_record("user-2", client["id"])
    assert await service.list_records("user-2") == []


async def test_invalid_payload_reports_fields(make_service):
    service = make_service("clients")

    with pytest.raises(ValidationException) as exc_info:
        await service.create_record("user-1", {"name": "", "phone_number": "123"})

    assert set(exc_info.value.fields) == {"name", "phone_number"}


async def test_list_filters_are_coerced(make_service):
    service = make_service("services")
    await service.create_record("user-1", {"name": "Corte", "price": 40})
    await service.create_record("user-1", {"name": "Barba", "is_active": False})

    active = await service.list_records("user-1", {"is_active": "true", "unknown": "ignored"})

    assert [record["name"] for record in active] == ["Corte"]


async def test_invalid_filter_value(make_service):
    service = make_service("working_hours")

    with pytest.raises(ValidationException) as exc_info:
        await service.list_records("user-1", {"day_of_week": "monday"})

    assert "day_of_week" in exc_info.value.fields


async def test_appointment_end_date_follows_duration(make_service):
    service = make_service("appointments")
    appointment = await service.create_record("user-1", {
        "contact_number": "5511987654321", "date": "2024-05-01T14:00:00", "duration": 30
    })

    assert appointment["end_date"] == datetime(2024, 5, 1, 14, 30)

    updated = await service.update_record("user-1", appointment["id"], {"duration": 90})

    assert updated["end_date"] == datetime(2024, 5, 1, 15, 30)
    assert updated["contact_number"] == "5511987654321"


async def test_partial_update_is_validated_as_a_whole(make_service):
    service = make_service("appointments")
    appointment = await service.create_record("user-1", {"contact_number": "5511987654321", "date": "2024-05-01T14:00:00"})

    with pytest.raises(ValidationException):
        await service.update_record("user-1", appointment["id"], {"status": "unknown"})


async def test_order_total_is_recomputed_from_items(make_service):
    service = make_service("orders")
    order = await service.create_record("user-1", {
        "contact_number": "5511987654321",
        "items": [{"name": "Pizza", "quantity": 2, "unit_price": 35.5}],
    })
    assert order["total_amount"] == 71.0

    updated = await service.update_record("user-1", order["id"], {
        "items": [{"name": "Pizza", "quantity": 1, "unit_price": 35.5}]
    })
    assert updated["total_amount"] == 35.5

    overridden = await service.update_record("user-1", order["id"], {"total_amount": 30})
    assert overridden["total_amount"] == 30


async def test_only_one_default_pix_key(make_service):
    service = make_service("pix_keys")
    first = await service.create_record("user-1", {"label": "Loja", "key": "loja@pix.test", "key_type": "email", "is_default": True})
    other_tenant = await service.create_record("user-2", {"label": "Outra", "key": "x", "is_default": True})

    second = await service.create_record("user-1", {"label": "CNPJ", "key": "12345678000199", "key_type": "cnpj", "is_default": True})

    assert (await service.get_record("user-1", first["id"]))["is_default"] is False
    assert (await service.get_record("user-1", second["id"]))["is_default"] is True
    assert (await service.get_record("user-2", other_tenant["id"]))["is_default"] is True


async def test_working_hours_must_start_before_end(make_service):
    service = make_service("working_hours")

    with pytest.raises(ValidationException):
        await service.create_record("user-1", {"day_of_week": 1, "start": "18:00", "end": "09:00"})

    closed = await service.create_record("user-1", {"day_of_week": 0, "start": "18:00", "end": "09:00", "is_open": False})
    assert closed["is_open"] is False


# Instances

INSTANCE = {
    "name": "Loja Centro",
    "phone": "5511999990000",
    "phone_id": "1098765432",
    "access_token": "EAAG-secret",
    "webhook_verify_token": "verify-secret",
}


async def test_instance_secrets_are_never_returned(make_service, app_db):
    service = make_service("instances")

    created = await service.create_record("user-1", INSTANCE)
    listed = await service.list_records("user-1")
    fetched = await service.get_record("user-1", created["id"])

    for record in (created, listed[0], fetched):
        assert "access_token" not in record
        assert "webhook_verify_token" not in record
    stored = app_db.records["instances"][created["id"]]
    assert stored["access_token"] == "EAAG-secret"
    assert stored["webhook_verify_token"] == "verify-secret"


async def test_instance_update_keeps_stored_secrets(make_service, app_db):
    service = make_service("instances")
    created = await service.create_record("user-1", INSTANCE)

    updated = await service.update_record("user-1", created["id"], {"status": "connected"})

    assert updated["status"] == "connected"
    assert "access_token" not in updated
    assert app_db.records["instances"][created["id"]]["access_token"] == "EAAG-secret"

    await service.update_record("user-1", created["id"], {"access_token": "EAAG-rotated"})
    assert app_db.records["instances"][created["id"]]["access_token"] == "EAAG-rotated"


async def test_phone_id_is_unique_across_tenants(make_service):
    service = make_service("instances")
    created = await service.create_record("user-1", INSTANCE)

    with pytest.raises(ConflictException) as exc_info:
        await service.create_record("user-2", {**INSTANCE, "name": "Outra loja"})
    assert exc_info.value.status_code == 409

    other = await service.create_record("user-2", {**INSTANCE, "phone_id": "2222222222"})
    with pytest.raises(ConflictException):
        await service.update_record("user-2", other["id"], {"phone_id": INSTANCE["phone_id"]})

    # Saving a record with its own phone_id is not a conflict
    renamed = await service.update_record("user-1", created["id"], {"name": "Loja Matriz"})
    assert renamed["phone_id"] == INSTANCE["phone_id"]


async def test_instances_without_phone_id_do_not_conflict(make_service):
    service = make_service("instances")

    await service.create_record("user-1", {"name": "Rascunho"})
    await service.create_record("user-2", {"name": "Outro rascunho"})

    assert len(await service.list_records("user-1")) == 1


# Routes

@pytest.fixture
def client(log_util, make_service):
    app = FastAPI()
    app.include_router(create_record_api(
        log_util=log_util, record_service=make_service("clients"), prefix="/api/clients", tag="clients"
    ))
    return TestClient(app)


def test_record_routes(client):
    headers = {"x-user-id": "user-1"}

    assert client.get("/api/clients").status_code == 401

    created = client.post("/api/clients", json={"name": "Ana", "phone_number": "11987654321"}, headers=headers)
    assert created.status_code == 201
    record_id = created.json()["id"]

    listed = client.get("/api/clients", params={"name": "Ana"}, headers=headers)
    assert [record["id"] for record in listed.json()] == [record_id]

    updated = client.put(f"/api/clients/{record_id}", json={"notes": "Prefere manhã"}, headers=headers)
    assert updated.json()["notes"] == "Prefere manhã"

    assert client.get(f"/api/clients/{record_id}", headers={"x-user-id": "user-2"}).status_code == 404
    assert client.delete(f"/api/clients/{record_id}", headers=headers).json() == {"success": True}
    assert client.get(f"/api/clients/{record_id}", headers=headers).status_code == 404


def test_invalid_record_returns_400(client):
    response = client.post("/api/clients", json={"name": "Ana"}, headers={"x-user-id": "user-1"})

    assert response.status_code == 400
    assert response.json() == {"detail": "Invalid client data"}


def test_duplicate_instance_phone_id_returns_409(log_util, make_service):
    app = FastAPI()
    app.include_router(create_record_api(
        log_util=log_util, record_service=make_service("instances"), prefix="/api/whatsapp/instances", tag="instances"
    ))
    client = TestClient(app)

    created = client.post("/api/whatsapp/instances", json=INSTANCE, headers={"x-user-id": "user-1"})
    assert created.status_code == 201
    assert "access_token" not in created.json()

    duplicate = client.post("/api/whatsapp/instances", json=INSTANCE, headers={"x-user-id": "user-2"})
    assert duplicate.status_code == 409
    assert duplicate.json() == {"detail": "Instance phone_id already in use"}
