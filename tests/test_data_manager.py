"""Tests for the spreadsheet-backed DataManager."""

import csv
import io
import json
from datetime import datetime, timedelta

import pytest
from openpyxl import load_workbook

from citabot.schemas.appointment_schema import Appointment, AppointmentFilters, AppointmentStatus
from citabot.storage.data_manager import (
    CSV_HEADERS,
    AppointmentNotFoundError,
    AppointmentValidationError,
    DataEventType,
    DataManager,
    InvalidStatusTransitionError,
)
from tests.conftest import BERLIN, FIXED_NOW, make_appointment_data, with_workbook


def _conversation(message_count=4, language="es", completed=True, **extra):
    return {
        "start_time": FIXED_NOW.isoformat(),
        "end_time": (FIXED_NOW + timedelta(minutes=5)).isoformat(),
        "language": language,
        "message_count": message_count,
        "completed": completed,
        "final_state": "COMPLETED",
        "appointment_id": None,
        "metadata": {"technician": "CLARITY-01", "zone": "PLZ 29xxx", "reminder_enabled": "true"},
        **extra,
    }


@pytest.fixture
def events(data_manager):
    received = []
    data_manager.subscribe(received.append)
    return received


def _of_type(events, event_type):
    return [e for e in events if e.type == event_type]


class TestInitialize:
    @pytest.mark.asyncio
    async def test_fresh_store_writes_workbook(self, data_manager, events):
        await data_manager.initialize()
        assert data_manager.path.exists()
        wb = load_workbook(data_manager.path)
        assert wb.sheetnames == ["Citas", "Conversaciones", "Estadísticas"]
        assert wb["Citas"]["A1"].value == "ID Cita"
        assert wb["Estadísticas"]["A1"].value == "ESTADÍSTICAS DEL SISTEMA"
        assert _of_type(events, DataEventType.INITIALIZED)[0].payload == {"appointments": 0}

    @pytest.mark.asyncio
    async def test_reload_round_trip(self, data_manager, data_config, scheduling, clock):
        await data_manager.initialize()
        created = await data_manager.create_appointment(make_appointment_data(reminder_enabled=True))
        await data_manager.update_appointment(created.id, {"notes": "Portal B", "customer_name": "Ana"})
        await data_manager.save_conversation("s-1", _conversation())
        await data_manager.close()

        reloaded = DataManager(data_config, scheduling, clock=clock)
        await reloaded.initialize()
        assert reloaded.get_appointment(created.id).model_dump() == (
            data_manager.get_appointment(created.id).model_dump()
        )
        summary = reloaded.get_conversation("s-1")
        assert summary.message_count == 4
        assert summary.completed is True
        assert summary.duration_minutes == 5

    @pytest.mark.asyncio
    async def test_numeric_phone_cell_is_loaded_as_text(self, data_manager, data_config, scheduling, clock):
        await data_manager.initialize()
        created = await data_manager.create_appointment(make_appointment_data())
        await data_manager.close()
        wb = load_workbook(data_manager.path)
        assert wb["Citas"]["D1"].value == "Teléfono"
        wb["Citas"]["D2"] = 4915112345678
        wb.save(data_manager.path)

        reloaded = DataManager(data_config, scheduling, clock=clock)
        await reloaded.initialize()
        assert reloaded.get_appointment(created.id).phone == "4915112345678"

    @pytest.mark.asyncio
    async def test_corrupt_file_starts_empty(self, data_manager):
        data_manager.path.write_bytes(b"not a spreadsheet")
        await data_manager.initialize()
        assert data_manager.get_appointments() == []
        assert load_workbook(data_manager.path).sheetnames[0] == "Citas"


class TestCreate:
    @pytest.mark.asyncio
    async def test_create(self, data_manager, events, clock):
        await data_manager.initialize()
        appointment = await data_manager.create_appointment(make_appointment_data(technician="CLARITY-07"))
        assert appointment.status == AppointmentStatus.CONFIRMED
        assert appointment.zone == "PLZ 29227"
        assert appointment.start_time == datetime(2025, 9, 16, 9, 0, tzinfo=BERLIN)
        assert appointment.end_time - appointment.start_time == timedelta(hours=2)
        assert appointment.created_at == clock()
        assert appointment.updated_at is None
        assert data_manager.get_appointment(appointment.id) == appointment
        assert _of_type(events, DataEventType.APPOINTMENT_CREATED)[0].payload["appointment"] == appointment

    @pytest.mark.asyncio
    async def test_persisted_immediately(self, data_manager):
        await data_manager.initialize()
        appointment = await data_manager.create_appointment(make_appointment_data())
        rows = list(load_workbook(data_manager.path)["Citas"].iter_rows(min_row=2, values_only=True))
        assert len(rows) == 1
        assert rows[0][0] == appointment.id
        assert rows[0][8] == "confirmed"

    @pytest.mark.asyncio
    async def test_missing_slot(self, data_manager):
        await data_manager.initialize()
        data = make_appointment_data()
        del data["slot"]
        with pytest.raises(AppointmentValidationError, match="slot"):
            await data_manager.create_appointment(data)

    @pytest.mark.asyncio
    async def test_duplicate_id(self, data_manager):
        await data_manager.initialize()
        await data_manager.create_appointment(make_appointment_data())
        with pytest.raises(AppointmentValidationError, match="Duplicate"):
            await data_manager.create_appointment(make_appointment_data())

    @pytest.mark.asyncio
    async def test_missing_technician_is_invalid(self, data_manager):
        await data_manager.initialize()
        with pytest.raises(AppointmentValidationError):
            await data_manager.create_appointment(make_appointment_data(technician=None))

    @pytest.mark.asyncio
    async def test_phone_is_normalized(self, data_manager):
        await data_manager.initialize()
        created = await data_manager.create_appointment(make_appointment_data(phone="0049 (151) 234-5678"))
        assert created.phone == "+491512345678"
        assert data_manager.get_appointment(created.id).phone == "+491512345678"


class TestUpdate:
    @pytest.mark.asyncio
    async def test_patch_and_audit(self, data_manager, clock):
        await data_manager.initialize()
        created = await data_manager.create_appointment(make_appointment_data())
        clock.advance(minutes=10)
        updated = await data_manager.update_appointment(created.id, {"phone": "+49 151 1234"})
        assert updated.phone == "+491511234"
        assert updated.updated_at == clock()
        assert updated.created_at == created.created_at

    @pytest.mark.asyncio
    async def test_technician_change_updates_zone(self, data_manager):
        await data_manager.initialize()
        created = await data_manager.create_appointment(make_appointment_data())
        updated = await data_manager.update_appointment(created.id, {"technician": "CLARITY-02"})
        assert updated.zone == "PLZ 30xxx"

    @pytest.mark.asyncio
    async def test_reschedule_times(self, data_manager):
        await data_manager.initialize()
        created = await data_manager.create_appointment(make_appointment_data())
        start = datetime(2025, 9, 18, 13, 0, tzinfo=BERLIN)
        updated = await data_manager.update_appointment(
            created.id, {"start_time": start.isoformat(), "end_time": (start + timedelta(hours=2)).isoformat()}
        )
        assert updated.start_time == start

    @pytest.mark.asyncio
    async def test_unknown_id(self, data_manager):
        await data_manager.initialize()
        with pytest.raises(AppointmentNotFoundError, match="C-NOPE"):
            await data_manager.update_appointment("C-NOPE", {"notes": "x"})
        with pytest.raises(KeyError):
            await data_manager.cancel_appointment("C-NOPE")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("field", ["id", "created_at", "session_id", "updated_at", "cancelled_at", "colour"])
    async def test_protected_fields(self, data_manager, field):
        await data_manager.initialize()
        created = await data_manager.create_appointment(make_appointment_data())
        with pytest.raises(AppointmentValidationError, match=field):
            await data_manager.update_appointment(created.id, {field: "x"})
        assert data_manager.get_appointment(created.id) == created

    @pytest.mark.asyncio
    async def test_end_before_start(self, data_manager):
        await data_manager.initialize()
        created = await data_manager.create_appointment(make_appointment_data())
        with pytest.raises(AppointmentValidationError, match="end"):
            await data_manager.update_appointment(created.id, {"end_time": created.start_time.isoformat()})

    @pytest.mark.asyncio
    async def test_bad_value(self, data_manager):
        await data_manager.initialize()
        created = await data_manager.create_appointment(make_appointment_data())
        with pytest.raises(AppointmentValidationError):
            await data_manager.update_appointment(created.id, {"status": "lost"})

    @pytest.mark.asyncio
    async def test_status_moves_forward(self, data_manager):
        await data_manager.initialize()
        created = await data_manager.create_appointment(make_appointment_data())
        done = await data_manager.update_appointment(created.id, {"status": "completed"})
        assert done.status == AppointmentStatus.COMPLETED
        with pytest.raises(InvalidStatusTransitionError):
            await data_manager.update_appointment(created.id, {"status": "confirmed"})


class TestCancel:
    @pytest.mark.asyncio
    async def test_status_patch_records_cancellation(self, data_manager, clock):
        await data_manager.initialize()
        created = await data_manager.create_appointment(make_appointment_data())
        clock.advance(hours=1)
        cancelled = await data_manager.update_appointment(created.id, {"status": "cancelled"})
        assert cancelled.status == AppointmentStatus.CANCELLED
        assert cancelled.cancelled_at == clock()
        assert cancelled.cancellation_reason == ""
        with pytest.raises(InvalidStatusTransitionError):
            await data_manager.cancel_appointment(created.id)

    @pytest.mark.asyncio
    async def test_cancel_only_touches_status_and_audit(self, data_manager, clock):
        await data_manager.initialize()
        created = await data_manager.create_appointment(make_appointment_data(notes="Timbre 3"))
        clock.advance(hours=1)
        cancelled = await data_manager.cancel_appointment(created.id, "customer_request")

        before, after = created.model_dump(), cancelled.model_dump()
        changed = {key for key in before if before[key] != after[key]}
        assert changed == {"status", "updated_at", "cancelled_at", "cancellation_reason"}
        assert cancelled.status == AppointmentStatus.CANCELLED
        assert cancelled.cancelled_at == clock()
        assert cancelled.cancellation_reason == "customer_request"

    @pytest.mark.asyncio
    async def test_cancel_twice(self, data_manager):
        await data_manager.initialize()
        created = await data_manager.create_appointment(make_appointment_data())
        await data_manager.cancel_appointment(created.id)
        with pytest.raises(InvalidStatusTransitionError):
            await data_manager.cancel_appointment(created.id)

    @pytest.mark.asyncio
    async def test_cancelled_cannot_be_reopened(self, data_manager):
        await data_manager.initialize()
        created = await data_manager.create_appointment(make_appointment_data())
        await data_manager.cancel_appointment(created.id)
        with pytest.raises(InvalidStatusTransitionError):
            await data_manager.update_appointment(created.id, {"status": "confirmed"})


class TestQuery:
    async def _seed(self, data_manager):
        await data_manager.initialize()
        specs = [
            ("C-2025-0915-0800-CCCC", datetime(2025, 9, 18, 9, 0, tzinfo=BERLIN), "CLARITY-01"),
            ("C-2025-0915-0800-AAAA", datetime(2025, 9, 16, 9, 0, tzinfo=BERLIN), "CLARITY-02"),
            ("C-2025-0915-0800-BBBB", datetime(2025, 9, 17, 11, 0, tzinfo=BERLIN), "CLARITY-01"),
        ]
        for appointment_id, start, technician in specs:
            await data_manager.create_appointment(
                make_appointment_data(appointment_id, start, technician, session_id=appointment_id)
            )
        await data_manager.cancel_appointment("C-2025-0915-0800-BBBB")

    @pytest.mark.asyncio
    async def test_sorted_by_start(self, data_manager):
        await self._seed(data_manager)
        assert [a.id[-4:] for a in data_manager.get_appointments()] == ["AAAA", "BBBB", "CCCC"]

    @pytest.mark.asyncio
    async def test_filter_by_technician_and_status(self, data_manager):
        await self._seed(data_manager)
        filters = AppointmentFilters(technician="CLARITY-01", status=AppointmentStatus.CONFIRMED)
        assert [a.id[-4:] for a in data_manager.get_appointments(filters)] == ["CCCC"]

    @pytest.mark.asyncio
    async def test_date_bounds_are_inclusive(self, data_manager):
        await self._seed(data_manager)
        filters = AppointmentFilters(
            date_from=datetime(2025, 9, 16, 9, 0, tzinfo=BERLIN),
            date_to=datetime(2025, 9, 17, 11, 0, tzinfo=BERLIN),
        )
        assert [a.id[-4:] for a in data_manager.get_appointments(filters)] == ["AAAA", "BBBB"]

    @pytest.mark.asyncio
    async def test_naive_bounds_are_local(self, data_manager):
        await self._seed(data_manager)
        filters = AppointmentFilters(date_from=datetime(2025, 9, 17, 0, 0))
        assert [a.id[-4:] for a in data_manager.get_appointments(filters)] == ["BBBB", "CCCC"]

    @pytest.mark.asyncio
    async def test_no_match(self, data_manager):
        await self._seed(data_manager)
        assert data_manager.get_appointments(AppointmentFilters(technician="CLARITY-05")) == []


class TestConversations:
    @pytest.mark.asyncio
    async def test_save_and_get(self, data_manager, events):
        await data_manager.initialize()
        summary = await data_manager.save_conversation("s-1", _conversation())
        assert data_manager.get_conversation("s-1") == summary
        assert summary.metadata["reminder_enabled"] == "true"
        assert _of_type(events, DataEventType.CONVERSATION_SAVED)

    @pytest.mark.asyncio
    async def test_metadata_values_are_strings(self, data_manager):
        await data_manager.initialize()
        summary = await data_manager.save_conversation(
            "s-1", _conversation(metadata={"reminder_enabled": True, "zone": None})
        )
        assert summary.metadata == {"reminder_enabled": "True", "zone": None}

    @pytest.mark.asyncio
    async def test_missing_start_time(self, data_manager):
        await data_manager.initialize()
        data = _conversation()
        del data["start_time"]
        with pytest.raises(AppointmentValidationError):
            await data_manager.save_conversation("s-1", data)

    def test_unknown_conversation(self, data_manager):
        assert data_manager.get_conversation("nope") is None


class TestStats:
    @pytest.mark.asyncio
    async def test_counts(self, data_manager, clock):
        await data_manager.initialize()
        first = await data_manager.create_appointment(make_appointment_data("C-2025-0915-0800-AAAA"))
        await data_manager.create_appointment(
            make_appointment_data("C-2025-0915-0800-BBBB", reminder_enabled=True)
        )
        await data_manager.cancel_appointment(first.id)
        await data_manager.save_conversation("s-1", _conversation(message_count=2, language="es"))
        await data_manager.save_conversation("s-2", _conversation(message_count=3, language="de", completed=False))

        stats = data_manager.generate_stats()
        assert stats["appointments"] == {
            "total": 2, "confirmed": 1, "pending": 0, "cancelled": 1, "completed": 0, "with_reminder": 1,
        }
        assert stats["conversations"] == {
            "total": 2, "completed": 1, "average_messages": 3, "by_language": {"es": 1, "de": 1},
        }
        assert stats["system"]["timestamp"] == clock().isoformat()
        assert stats["system"]["uptime_seconds"] >= 0
        assert stats["system"]["threads"] >= 1

    def test_empty(self, data_manager):
        stats = data_manager.generate_stats()
        assert stats["appointments"]["total"] == 0
        assert stats["conversations"]["average_messages"] == 0


class TestExport:
    async def _seed(self, data_manager):
        await data_manager.initialize()
        await data_manager.create_appointment(
            make_appointment_data(customer_name="José Müller", language="de")
        )

    @pytest.mark.asyncio
    async def test_json_round_trip(self, data_manager):
        await self._seed(data_manager)
        exported = json.loads(await data_manager.export_data("json"))
        original = data_manager.get_appointments()
        assert [Appointment.model_validate(o).model_dump() for o in exported] == [
            a.model_dump() for a in original
        ]

    @pytest.mark.asyncio
    async def test_json_keeps_non_ascii(self, data_manager):
        await self._seed(data_manager)
        assert "José Müller" in await data_manager.export_data("json")

    @pytest.mark.asyncio
    async def test_csv(self, data_manager):
        await self._seed(data_manager)
        rows = list(csv.reader(io.StringIO(await data_manager.export_data("CSV"))))
        assert rows[0] == CSV_HEADERS
        assert rows[1][1:] == [
            "José Müller", "16/09/2025 09:00", "16/09/2025 11:00", "CLARITY-01", "confirmed", "de",
        ]

    @pytest.mark.asyncio
    async def test_xlsx(self, data_manager):
        await self._seed(data_manager)
        data = await data_manager.export_data("xlsx")
        wb = load_workbook(io.BytesIO(data))
        assert wb.sheetnames == ["Citas Exportadas"]
        assert wb.active.max_row == 2

    @pytest.mark.asyncio
    async def test_filters_apply(self, data_manager):
        await self._seed(data_manager)
        exported = json.loads(
            await data_manager.export_data("json", AppointmentFilters(technician="CLARITY-02"))
        )
        assert exported == []

    @pytest.mark.asyncio
    async def test_unknown_format(self, data_manager):
        with pytest.raises(AppointmentValidationError, match="pdf"):
            await data_manager.export_data("pdf")


class TestPersistenceFaults:
    @pytest.mark.asyncio
    async def test_write_failure_keeps_memory_state(self, data_config, scheduling, clock, tmp_path):
        target = tmp_path / "locked.xlsx"
        target.mkdir()
        manager = DataManager(with_workbook(data_config, target), scheduling, clock=clock)
        received = []
        manager.subscribe(received.append)

        await manager.initialize()
        appointment = await manager.create_appointment(make_appointment_data())

        assert manager.get_appointment(appointment.id) == appointment
        errors = _of_type(received, DataEventType.ERROR)
        assert errors and all(e.payload["operation"] == "save" for e in errors)
        assert not list(tmp_path.glob(".locked.tmp*"))

    @pytest.mark.asyncio
    async def test_listener_failure_is_contained(self, data_manager):
        def broken(event):
            raise RuntimeError("listener down")

        data_manager.subscribe(broken)
        await data_manager.initialize()
        await data_manager.create_appointment(make_appointment_data())


class TestBackup:
    @pytest.mark.asyncio
    async def test_backup_copies_workbook(self, data_manager, events):
        await data_manager.initialize()
        await data_manager.create_appointment(make_appointment_data())
        backup = await data_manager.create_backup()
        assert backup.name == "appointments_backup_2025-09-15_08-00-00.xlsx"
        assert backup.read_bytes() == data_manager.path.read_bytes()
        assert _of_type(events, DataEventType.BACKUP_CREATED)[0].payload["path"] == str(backup)

    @pytest.mark.asyncio
    async def test_backup_failure_is_reported(self, data_manager, events):
        assert await data_manager.create_backup() is None
        error = _of_type(events, DataEventType.ERROR)[0]
        assert error.payload["operation"] == "backup"

    @pytest.mark.asyncio
    async def test_backups_disabled(self, data_manager):
        await data_manager.initialize()
        data_manager.start_backups()
        assert data_manager._backup_task is None
        await data_manager.close()

    def test_event_to_dict(self, data_manager, events):
        data_manager._publish(DataEventType.BACKUP_CREATED, path="x.xlsx")
        payload = events[0].to_dict()
        assert payload["type"] == "backup_created"
        assert payload["payload"] == {"path": "x.xlsx"}
