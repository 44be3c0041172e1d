"""
Record Service
Tenant-scoped CRUD shared by the simple record collections (clients, appointments,
services, catalogs, orders, pix keys, working hours, WhatsApp instances).
"""
from dataclasses import dataclass
from typing import Optional, List, Dict, Any, Type, Tuple
from datetime import datetime
from pydantic import BaseModel, TypeAdapter, ValidationError

# Utils
from autozap.utils.log_utils import LogUtil
from autozap.utils.validation_utils import validation_fields

# Database
from autozap.database.app_db import AppDB

# Models
from autozap.models.instance_data import InstanceData
from autozap.models.record_data import (
    ClientData,
    AppointmentData,
    ServiceData,
    CatalogData,
    OrderData,
    PixKeyData,
    WorkingHoursData,
)

# Exceptions
from autozap.exceptions.app_exception import ValidationException, NotFoundException, ConflictException

PROTECTED_FIELDS = ("id", "user_id", "created_at", "updated_at")


@dataclass(frozen=True)
class RecordResource:
    name: str
    collection: str
    model: Type[BaseModel]
    filter_fields: Tuple[str, ...] = ()
    sort_field: str = "created_at"
    # Recomputed by the model unless the update sets them explicitly
    derived_fields: Tuple[str, ...] = ()
    # Stored but never returned by the API
    hidden_fields: Tuple[str, ...] = ()
    # Unique across all tenants
    unique_fields: Tuple[str, ...] = ()


RECORD_RESOURCES: Dict[str, RecordResource] = {
    resource.collection: resource
    for resource in (
        RecordResource("Client", "clients", ClientData, ("instance_id", "phone_number", "name")),
        RecordResource("Appointment", "appointments", AppointmentData, ("instance_id", "contact_number", "status"), sort_field="date"),
        RecordResource("Service", "services", ServiceData, ("is_active",)),
        RecordResource("Catalog", "catalogs", CatalogData, ("is_active",)),
        RecordResource("Order", "orders", OrderData, ("instance_id", "contact_number", "status"), derived_fields=("total_amount",)),
        RecordResource("Pix key", "pix_keys", PixKeyData, ("key_type", "is_default")),
        RecordResource("Working hours", "working_hours", WorkingHoursData, ("day_of_week", "is_open")),
        RecordResource(
            "Instance",
            "instances",
            InstanceData,
            ("status", "phone_id"),
            hidden_fields=("access_token", "webhook_verify_token"),
            unique_fields=("phone_id",)
        ),
    )
}


class RecordService:
    def __init__(self, log_util: LogUtil, app_db: AppDB, resource: RecordResource):
        self.log_util = log_util
        self.app_db = app_db
        self.resource = resource

    def _validate(self, data: Dict[str, Any]) -> BaseModel:
        try:
            return self.resource.model.model_validate(data)
        except ValidationError as e:
            raise ValidationException(
                message=f"Invalid {self.resource.name.lower()} data",
                fields=validation_fields(e)
            )

    def _build_query(self, user_id: str, filters: Optional[Dict[str, str]]) -> Dict[str, Any]:
        """
        Tenant query plus the resource's filterable fields, coerced to the model's field types.
        Unknown query parameters are ignored.
        """
        query: Dict[str, Any] = {"user_id": user_id}
        for field_name, raw_value in (filters or {}).items():
            if field_name not in self.resource.filter_fields:
                continue
            annotation = self.resource.model.model_fields[field_name].annotation
            try:
                query[field_name] = TypeAdapter(annotation).validate_python(raw_value)
            except ValidationError:
                raise ValidationException(
                    message=f"Invalid filter value for {field_name}",
                    fields={field_name: [f"Invalid value: {raw_value}"]}
                )
        return query

    def _public(self, record: Dict[str, Any]) -> Dict[str, Any]:
        return {key: value for key, value in record.items() if key not in self.resource.hidden_fields}

    async def _check_unique(self, record: BaseModel, record_id: Optional[str] = None) -> None:
        """
        Reject values of unique fields already used by another record of any tenant.
        """
        for field_name in self.resource.unique_fields:
            value = getattr(record, field_name, None)
            if value in (None, ""):
                continue
            matches = await self.app_db.find_records(self.resource.collection, {field_name: value})
            if any(match.get("id") != record_id for match in matches):
                self.log_util.warning(
                    service_name="RecordService",
                    message=f"{self.resource.name} {field_name} {value} is already registered"
                )
                raise ConflictException(f"{self.resource.name} {field_name} already in use")

    async def _clear_other_defaults(self, user_id: str, record: BaseModel) -> None:
        if getattr(record, "is_default", False):
            await self.app_db.update_records(
                self.resource.collection,
                {"user_id": user_id, "is_default": True},
                {"is_default": False}
            )

    async def _get_stored(self, user_id: str, record_id: str) -> Dict[str, Any]:
        record = await self.app_db.find_record(self.resource.collection, record_id, user_id)
        if record is None:
            raise NotFoundException(self.resource.name)
        return record

    async def list_records(self, user_id: str, filters: Optional[Dict[str, str]] = None) -> List[Dict[str, Any]]:
        query = self._build_query(user_id, filters)
        records = await self.app_db.find_records(self.resource.collection, query, sort_field=self.resource.sort_field)
        return [self._public(record) for record in records]

    async def get_record(self, user_id: str, record_id: str) -> Dict[str, Any]:
        return self._public(await self._get_stored(user_id, record_id))

    async def create_record(self, user_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        data = {key: value for key, value in payload.items() if key not in PROTECTED_FIELDS}
        record = self._validate({**data, "user_id": user_id})
        await self._check_unique(record)
        await self._clear_other_defaults(user_id, record)

        saved = await self.app_db.insert_record(self.resource.collection, record.model_dump(exclude={"id"}))
        self.log_util.info(
            service_name="RecordService",
            message=f"{self.resource.name} {saved.get('id')} created for user {user_id}"
        )
        return self._public(saved)

    async def update_record(self, user_id: str, record_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Partial update: the payload is merged over the stored record and the result is validated as a whole.
        Hidden fields left out of the payload keep their stored values.
        """
        existing = await self._get_stored(user_id, record_id)
        updates = {key: value for key, value in payload.items() if key not in PROTECTED_FIELDS}

        merged = {**existing, **updates, "user_id": user_id}
        for field_name in self.resource.derived_fields:
            if field_name not in updates:
                merged.pop(field_name, None)
        record = self._validate(merged)
        await self._check_unique(record, record_id)
        await self._clear_other_defaults(user_id, record)

        changes = record.model_dump(exclude={"id", "user_id", "created_at"})
        changes["updated_at"] = datetime.utcnow()
        updated = await self.app_db.update_record(self.resource.collection, record_id, user_id, changes)
        if updated is None:
            raise NotFoundException(self.resource.name)
        return self._public(updated)

    async def delete_record(self, user_id: str, record_id: str) -> Dict[str, Any]:
        deleted = await self.app_db.delete_record(self.resource.collection, record_id, user_id)
        if not deleted:
            raise NotFoundException(self.resource.name)
        self.log_util.info(
            service_name="RecordService",
            message=f"{self.resource.name} {record_id} deleted for user {user_id}"
        )
        return {"success": True}
