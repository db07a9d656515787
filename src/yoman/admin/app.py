from __future__ import annotations

import asyncio
import time
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import PlainTextResponse

from yoman.booking.errors import (
    AppointmentNotFoundError,
    BookingConflictError,
    BookingValidationError,
    StaleAvailabilityError,
)
from yoman.booking.processor import require_booking_processor
from yoman.config.settings import ENABLE_TELEGRAM_BOT_POLLING
from yoman.core.agent import get_status as get_agent_status
from yoman.logger import logger
from yoman.metrics import runtime_metrics
import yoman.storage.app_settings as app_settings_storage
import yoman.storage.business_hours as business_hours_storage
import yoman.storage.db_config as db_config
import yoman.storage.message as message_storage
import yoman.storage.reminder as reminder_storage
import yoman.storage.service_category as category_storage
from yoman.world.reminder_scheduler import get_status as get_scheduler_status, require_scheduler

from .auth import require_admin_auth
from .schemas import (
    BookingRequest,
    BusinessHoursUpdate,
    CategoryIn,
    ReminderCreate,
    ReminderTemplateUpdate,
    RuntimeControl,
    ShutdownRequest,
)

ADMIN_REQUESTER = "admin"


def _hours_payload(hours: dict) -> dict[str, list[dict[str, str]]]:
    return {day: [{"start": r.start, "end": r.end} for r in ranges] for day, ranges in hours.items()}


def create_app(control: RuntimeControl) -> FastAPI:
    app = FastAPI(title="Yoman Admin API", version="0.3.0")

    def health_payload() -> dict[str, Any]:
        return {
            "status": "ok",
            "now_utc": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
            "uptime_seconds": max(0.0, time.time() - control.started_at),
            "db_connected": db_config.conn is not None,
            "shutdown_requested": control.shutdown_event.is_set(),
            "restart_requested": control.restart_event.is_set(),
        }

    @app.get("/healthz", include_in_schema=False)
    async def healthz() -> PlainTextResponse:
        return PlainTextResponse("ok")

    @app.get("/api/v1/health")
    async def api_health() -> dict[str, Any]:
        return health_payload()

    @app.get("/api/v1/metrics")
    async def get_metrics(request: Request) -> dict[str, Any]:
        await require_admin_auth(request)
        return {
            "runtime": runtime_metrics.snapshot(),
            "components": {
                "db": {"connected": db_config.conn is not None},
                "telegram": {"enabled": ENABLE_TELEGRAM_BOT_POLLING},
                "scheduler": get_scheduler_status(),
                "agents": get_agent_status(),
            },
            "active_tasks": len(asyncio.all_tasks()),
        }

    @app.get("/api/v1/scheduler")
    async def scheduler_status(request: Request) -> dict[str, Any]:
        await require_admin_auth(request)
        return get_scheduler_status()

    # ----------------- 提醒 ----------------
    @app.get("/api/v1/reminders")
    async def list_reminders(
        request: Request,
        owner: str | None = None,
        date: str | None = None,
        future: bool = False,
    ) -> dict[str, Any]:
        await require_admin_auth(request)
        if future:
            reminders = await reminder_storage.get_future_reminders(owner=owner)
        elif date:
            reminders = await reminder_storage.get_reminders_for_date(date)
            if owner is not None:
                reminders = [r for r in reminders if r.owner == owner]
        elif owner is not None:
            reminders = await reminder_storage.get_reminders_for_owner(owner)
        else:
            reminders = await reminder_storage.get_all_reminders()
        return {"items": [r.to_dict() for r in reminders], "total": len(reminders)}

    @app.post("/api/v1/reminders", status_code=201)
    async def create_reminder(payload: ReminderCreate, request: Request) -> dict[str, Any]:
        await require_admin_auth(request)
        try:
            reminder = await reminder_storage.create_reminder(
                owner=payload.owner,
                time=payload.time,
                day=payload.day,
                date=payload.date,
                kind=payload.kind,
                title=payload.title,
                duration=payload.duration,
                pre_notifications=payload.pre_notifications,
                notes=payload.notes,
            )
        except reminder_storage.ReminderValidationError as e:
            raise HTTPException(status_code=422, detail={"errors": e.errors})
        return reminder.to_dict()

    @app.delete("/api/v1/reminders/{reminder_id}")
    async def delete_reminder(reminder_id: str, request: Request) -> dict[str, Any]:
        await require_admin_auth(request)
        removed = await reminder_storage.delete_reminder(reminder_id)
        if removed is None:
            raise HTTPException(status_code=404, detail="提醒不存在")
        return {"ok": True, "deleted": removed.to_dict()}

    @app.post("/api/v1/reminders/{reminder_id}/send-now")
    async def send_reminder_now(reminder_id: str, request: Request) -> dict[str, Any]:
        await require_admin_auth(request)
        scheduler = require_scheduler()
        try:
            updated = await scheduler.send_now(reminder_id)
        except Exception as e:
            logger.warning(f"手动发送提醒失败: id={reminder_id}, error={e}")
            raise HTTPException(status_code=502, detail=f"发送失败: {e}")
        if updated is None:
            raise HTTPException(status_code=404, detail="提醒不存在")
        return updated.to_dict()

    @app.get("/api/v1/reminder-template")
    async def get_reminder_template(request: Request) -> dict[str, str]:
        await require_admin_auth(request)
        return {"template": await app_settings_storage.get_reminder_template()}

    @app.put("/api/v1/reminder-template")
    async def put_reminder_template(payload: ReminderTemplateUpdate, request: Request) -> dict[str, str]:
        await require_admin_auth(request)
        return {"template": await app_settings_storage.set_reminder_template(payload.template)}

    # ----------------- 服务类别 / 营业时间 ----------------
    @app.get("/api/v1/categories")
    async def list_categories(request: Request) -> dict[str, Any]:
        await require_admin_auth(request)
        categories = await category_storage.get_categories()
        return {"items": [c.to_dict() for c in categories]}

    @app.post("/api/v1/categories")
    async def save_category(payload: CategoryIn, request: Request) -> dict[str, Any]:
        await require_admin_auth(request)
        category = await category_storage.save_category(payload.model_dump())
        return category.to_dict()

    @app.delete("/api/v1/categories/{category_id}")
    async def delete_category(category_id: str, request: Request) -> dict[str, Any]:
        await require_admin_auth(request)
        if not await category_storage.delete_category(category_id):
            raise HTTPException(status_code=404, detail="服务类别不存在")
        return {"ok": True}

    @app.get("/api/v1/business-hours")
    async def get_business_hours(request: Request) -> dict[str, Any]:
        await require_admin_auth(request)
        return {"hours": _hours_payload(await business_hours_storage.get_business_hours())}

    @app.put("/api/v1/business-hours")
    async def put_business_hours(payload: BusinessHoursUpdate, request: Request) -> dict[str, Any]:
        await require_admin_auth(request)
        raw = {day: [r.model_dump() for r in ranges] for day, ranges in payload.hours.items()}
        try:
            hours = await business_hours_storage.set_business_hours(raw)
        except business_hours_storage.BusinessHoursError as e:
            raise HTTPException(status_code=422, detail=str(e))
        return {"hours": _hours_payload(hours)}

    # ----------------- 可预约时段 / 预约 ----------------
    @app.get("/api/v1/availability")
    async def get_availability(
        request: Request,
        date: str,
        category_id: str,
        treatment_id: str | None = None,
        owner: str | None = None,
    ) -> dict[str, Any]:
        await require_admin_auth(request)
        try:
            result = await require_booking_processor().list_free_slots(
                owner or ADMIN_REQUESTER,
                date,
                category_id=category_id,
                treatment_id=treatment_id,
            )
        except BookingValidationError as e:
            raise HTTPException(status_code=422, detail={"error": e.code})
        return {
            "date": result.date,
            "category_id": result.category.id,
            "treatment_id": result.treatment.id if result.treatment else None,
            "slots": result.slots,
        }

    @app.post("/api/v1/bookings", status_code=201)
    async def create_booking(payload: BookingRequest, request: Request) -> dict[str, Any]:
        await require_admin_auth(request)
        try:
            result = await require_booking_processor().book(
                payload.owner,
                payload.date,
                payload.time,
                category_id=payload.category_id,
                treatment_id=payload.treatment_id,
            )
        except StaleAvailabilityError as e:
            raise HTTPException(status_code=409, detail={"error": "stale_availability", "reason": e.reason.value})
        except BookingConflictError as e:
            raise HTTPException(status_code=409, detail={"error": "booking_conflict", "reason": e.reason.value})
        except BookingValidationError as e:
            raise HTTPException(status_code=422, detail={"error": e.code})
        return {**result.appointment.to_dict(), "service_label": result.service_label}

    @app.delete("/api/v1/bookings/{appointment_id}")
    async def cancel_booking(appointment_id: str, request: Request) -> dict[str, Any]:
        await require_admin_auth(request)
        try:
            removed = await require_booking_processor().cancel(ADMIN_REQUESTER, appointment_id=appointment_id)
        except AppointmentNotFoundError:
            raise HTTPException(status_code=404, detail="预约不存在")
        return {"ok": True, "deleted": removed.to_dict()}

    @app.get("/api/v1/messages")
    async def get_messages(request: Request, user_id: str, limit: int = 50) -> dict[str, Any]:
        await require_admin_auth(request)
        limit = max(1, min(limit, 500))
        items = await message_storage.get_recent_messages_by_user_id(user_id, limit=limit)
        return {"items": items, "user_id": user_id, "limit": limit}

    # ----------------- 运行控制 ----------------
    @app.post("/api/v1/admin/restart")
    async def admin_restart(payload: ShutdownRequest, request: Request) -> dict[str, Any]:
        auth_info = await require_admin_auth(request)
        logger.warning(f"收到远程重启请求: by={auth_info['user']}, reason={payload.reason}")
        control.restart_event.set()
        control.shutdown_event.set()
        return {"ok": True, "action": "restart", "reason": payload.reason}

    @app.post("/api/v1/admin/shutdown")
    async def admin_shutdown(payload: ShutdownRequest, request: Request) -> dict[str, Any]:
        auth_info = await require_admin_auth(request)
        logger.warning(f"收到远程关闭请求: by={auth_info['user']}, reason={payload.reason}")
        control.shutdown_event.set()
        return {"ok": True, "action": "shutdown", "reason": payload.reason}

    return app
