# fieldops/infra/pg_people_async.py
"""Async PostgreSQL repositories for technicians, admins and registrations."""
from __future__ import annotations

from typing import Optional

import asyncpg

from fieldops.core.domain import (
    AdminRole,
    AdminUser,
    Registration,
    RegistrationStatus,
    Technician,
)
from fieldops.core.errors import DuplicateRegistrationError
from fieldops.infra.db_async import safe_db_conn
from fieldops.infra.logging_config import get_logger
from fieldops.infra.metrics import AppMetrics

logger = get_logger(__name__)

_PENDING_CHAT_INDEX = "uq_registrations_pending_chat"


def _row_to_technician(row) -> Technician:
    return Technician(
        id=row["id"],
        name=row["name"],
        phone=row["phone"],
        chat_id=row["chat_id"],
        is_active=row["is_active"],
        is_available=row["is_available"],
        is_admin=row["is_admin"],
        latitude=row["latitude"],
        longitude=row["longitude"],
        last_location_at=row["last_location_at"],
        created_at=row["created_at"],
    )


def _row_to_admin(row) -> AdminUser:
    return AdminUser(
        id=row["id"],
        username=row["username"],
        name=row["name"],
        role=AdminRole(row["role"]),
        phone=row["phone"],
        password_hash=row["password_hash"],
        chat_id=row["chat_id"],
    )


def _row_to_registration(row) -> Registration:
    return Registration(
        id=row["id"],
        chat_id=row["chat_id"],
        phone=row["phone"],
        name=row["name"],
        status=RegistrationStatus(row["status"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        reviewed_at=row["reviewed_at"],
        rejection_reason=row["rejection_reason"],
        technician_id=row["technician_id"],
    )


# ============================================================================
# TECHNICIANS
# ============================================================================

class AsyncPostgresTechnicianRegistry:
    async def get(self, technician_id: str) -> Optional[Technician]:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM technicians WHERE id = $1", technician_id)
        return _row_to_technician(row) if row else None

    async def list_active_with_chat(self) -> list[Technician]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                "SELECT * FROM technicians WHERE is_active AND chat_id IS NOT NULL ORDER BY name"
            )
        return [_row_to_technician(r) for r in rows]

    async def find_by_chat(self, chat_id: str) -> Optional[Technician]:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM technicians WHERE chat_id = $1", chat_id)
        return _row_to_technician(row) if row else None

    async def find_by_phone(self, phone: str) -> Optional[Technician]:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM technicians WHERE phone = $1", phone)
        return _row_to_technician(row) if row else None

    async def upsert(self, technician: Technician) -> Technician:
        try:
            async with safe_db_conn() as conn:
                await conn.execute(
                    """
                    INSERT INTO technicians (id, name, phone, chat_id, is_active, is_available, is_admin,
                                             latitude, longitude, last_location_at, created_at)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
                    ON CONFLICT (id) DO UPDATE SET
                      name = EXCLUDED.name,
                      phone = EXCLUDED.phone,
                      chat_id = EXCLUDED.chat_id,
                      is_active = EXCLUDED.is_active,
                      is_available = EXCLUDED.is_available,
                      is_admin = EXCLUDED.is_admin,
                      latitude = EXCLUDED.latitude,
                      longitude = EXCLUDED.longitude,
                      last_location_at = EXCLUDED.last_location_at
                    """,
                    technician.id, technician.name, technician.phone, technician.chat_id,
                    technician.is_active, technician.is_available, technician.is_admin,
                    technician.latitude, technician.longitude, technician.last_location_at,
                    technician.created_at,
                )
        except Exception:
            logger.error("Failed to upsert technician", extra={"technician_id": technician.id}, exc_info=True)
            AppMetrics.database_error("technician_upsert")
            raise
        return technician


# ============================================================================
# ADMINS
# ============================================================================

class AsyncPostgresAdminRoster:
    async def get(self, admin_id: str) -> Optional[AdminUser]:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM admin_users WHERE id = $1", admin_id)
        return _row_to_admin(row) if row else None

    async def list_with_chat(self) -> list[AdminUser]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch("SELECT * FROM admin_users WHERE chat_id IS NOT NULL ORDER BY username")
        return [_row_to_admin(r) for r in rows]

    async def find_by_chat(self, chat_id: str) -> Optional[AdminUser]:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM admin_users WHERE chat_id = $1", chat_id)
        return _row_to_admin(row) if row else None

    async def find_by_username(self, username: str) -> Optional[AdminUser]:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM admin_users WHERE username = $1", username)
        return _row_to_admin(row) if row else None

    async def upsert(self, admin: AdminUser) -> AdminUser:
        try:
            async with safe_db_conn() as conn:
                await conn.execute(
                    """
                    INSERT INTO admin_users (id, username, name, role, phone, password_hash, chat_id)
                    VALUES ($1, $2, $3, $4, $5, $6, $7)
                    ON CONFLICT (id) DO UPDATE SET
                      username = EXCLUDED.username,
                      name = EXCLUDED.name,
                      role = EXCLUDED.role,
                      phone = EXCLUDED.phone,
                      password_hash = EXCLUDED.password_hash,
                      chat_id = EXCLUDED.chat_id
                    """,
                    admin.id, admin.username, admin.name, admin.role.value,
                    admin.phone, admin.password_hash, admin.chat_id,
                )
        except Exception:
            logger.error(f"Failed to upsert admin {admin.username}", exc_info=True)
            AppMetrics.database_error("admin_upsert")
            raise
        return admin


# ============================================================================
# REGISTRATIONS
# ============================================================================

class AsyncPostgresRegistrationRepository:
    async def get(self, registration_id: str) -> Optional[Registration]:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM registrations WHERE id = $1", registration_id)
        return _row_to_registration(row) if row else None

    async def find_pending_by_chat(self, chat_id: str) -> Optional[Registration]:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM registrations WHERE chat_id = $1 AND status = 'PENDING'", chat_id,
            )
        return _row_to_registration(row) if row else None

    async def find_pending_by_phone(self, phone: str) -> Optional[Registration]:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM registrations WHERE phone = $1 AND status = 'PENDING'", phone,
            )
        return _row_to_registration(row) if row else None

    async def find_latest_by_chat(self, chat_id: str) -> Optional[Registration]:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM registrations WHERE chat_id = $1 ORDER BY updated_at DESC LIMIT 1",
                chat_id,
            )
        return _row_to_registration(row) if row else None

    async def save(self, registration: Registration) -> Registration:
        try:
            async with safe_db_conn() as conn:
                await conn.execute(
                    """
                    INSERT INTO registrations (id, chat_id, phone, name, status, created_at, updated_at,
                                               reviewed_at, rejection_reason, technician_id)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                    ON CONFLICT (id) DO UPDATE SET
                      phone = EXCLUDED.phone,
                      name = EXCLUDED.name,
                      status = EXCLUDED.status,
                      updated_at = EXCLUDED.updated_at,
                      reviewed_at = EXCLUDED.reviewed_at,
                      rejection_reason = EXCLUDED.rejection_reason,
                      technician_id = EXCLUDED.technician_id
                    """,
                    registration.id, registration.chat_id, registration.phone, registration.name,
                    registration.status.value, registration.created_at, registration.updated_at,
                    registration.reviewed_at, registration.rejection_reason, registration.technician_id,
                )
        except asyncpg.UniqueViolationError as exc:
            # Two chats raced past the pending checks; the partial indexes decide
            logger.warning(
                f"Pending registration conflict on {exc.constraint_name}",
                extra={"registration_id": registration.id},
            )
            if exc.constraint_name == _PENDING_CHAT_INDEX:
                raise DuplicateRegistrationError("This chat already has a pending registration.") from exc
            raise DuplicateRegistrationError(
                "This phone number already has a pending registration from another chat."
            ) from exc
        except Exception:
            logger.error(
                "Failed to save registration",
                extra={"registration_id": registration.id},
                exc_info=True,
            )
            AppMetrics.database_error("registration_save")
            raise
        return registration

    async def list_by_status(self, status: RegistrationStatus) -> list[Registration]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                "SELECT * FROM registrations WHERE status = $1 ORDER BY created_at", status.value,
            )
        return [_row_to_registration(r) for r in rows]
