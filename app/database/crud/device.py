from __future__ import annotations

import asyncio
import random
import string
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from sqlalchemy import DateTime, bindparam, text
from sqlalchemy.ext.asyncio import AsyncSession


DEVICES_TABLE = 'subscriber_devices'

_READY_BINDS: set[str] = set()
_TABLES_LOCK = asyncio.Lock()
_ID_ALPHABET = string.ascii_lowercase + string.digits
_SYSTEM_RANDOM = random.SystemRandom()

_DEVICE_COLUMNS = """
    id,
    subscriber_ref,
    fingerprint,
    user_agent,
    display_name,
    platform,
    ip,
    country,
    request_count,
    is_revoked,
    last_seen,
    created_at
"""


@dataclass(slots=True)
class SubscriberDevice:
    id: str
    subscriber_ref: str
    fingerprint: str
    user_agent: str
    display_name: str
    platform: str
    ip: str | None
    country: str | None
    request_count: int
    is_revoked: bool
    last_seen: datetime | None
    created_at: datetime | None


@dataclass(slots=True)
class DeviceState:
    known: bool = False
    revoked: bool = False


@dataclass(slots=True)
class DeviceUpsertResult:
    device: SubscriberDevice
    created: bool


def _generate_id(length: int = 12) -> str:
    return ''.join(_SYSTEM_RANDOM.choice(_ID_ALPHABET) for _ in range(length))


def _to_db_datetime(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(UTC)
    return value.replace(tzinfo=None)


def _coerce_datetime(value: datetime | str | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value
    normalized = str(value).strip()
    if not normalized:
        return None
    normalized = normalized.replace('Z', '+00:00')
    if ' ' in normalized and 'T' not in normalized:
        normalized = normalized.replace(' ', 'T', 1)
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed


def _row_to_device(row) -> SubscriberDevice:
    return SubscriberDevice(
        id=str(row['id']),
        subscriber_ref=str(row['subscriber_ref']),
        fingerprint=str(row['fingerprint']),
        user_agent=str(row['user_agent']),
        display_name=str(row.get('display_name') or 'Unknown'),
        platform=str(row.get('platform') or 'Standard'),
        ip=row.get('ip'),
        country=row.get('country'),
        request_count=int(row.get('request_count') or 0),
        is_revoked=bool(row.get('is_revoked', False)),
        last_seen=_coerce_datetime(row.get('last_seen')),
        created_at=_coerce_datetime(row.get('created_at')),
    )


async def ensure_device_tables(db: AsyncSession) -> None:
    bind_key = str(db.bind.url)
    if bind_key in _READY_BINDS:
        return

    async with _TABLES_LOCK:
        if bind_key in _READY_BINDS:
            return

        await db.execute(
            text(
                f"""
                CREATE TABLE IF NOT EXISTS {DEVICES_TABLE} (
                    id VARCHAR(32) PRIMARY KEY,
                    subscriber_ref VARCHAR(64) NOT NULL,
                    fingerprint VARCHAR(64) NOT NULL,
                    user_agent TEXT NOT NULL,
                    display_name VARCHAR(128) NOT NULL DEFAULT 'Unknown',
                    platform VARCHAR(32) NOT NULL DEFAULT 'Standard',
                    ip VARCHAR(45) NULL,
                    country VARCHAR(16) NULL,
                    request_count INTEGER NOT NULL DEFAULT 1,
                    is_revoked BOOLEAN NOT NULL DEFAULT FALSE,
                    revoked_at TIMESTAMP NULL,
                    last_seen TIMESTAMP NOT NULL,
                    created_at TIMESTAMP NOT NULL,
                    CONSTRAINT uq_subscriber_devices_ref_fingerprint UNIQUE (subscriber_ref, fingerprint)
                )
                """
            )
        )
        await db.execute(
            text(
                f"""
                CREATE INDEX IF NOT EXISTS ix_subscriber_devices_ref_last_seen
                ON {DEVICES_TABLE} (subscriber_ref, last_seen)
                """
            )
        )
        await db.commit()

        _READY_BINDS.add(bind_key)


async def get_device_state(db: AsyncSession, subscriber_ref: str, fingerprint: str) -> DeviceState:
    await ensure_device_tables(db)
    result = await db.execute(
        text(
            f"""
            SELECT is_revoked
            FROM {DEVICES_TABLE}
            WHERE subscriber_ref = :subscriber_ref AND fingerprint = :fingerprint
            """
        ),
        {'subscriber_ref': subscriber_ref, 'fingerprint': fingerprint},
    )
    row = result.mappings().first()
    if row is None:
        return DeviceState()
    return DeviceState(known=True, revoked=bool(row['is_revoked']))


async def count_active_devices(
    db: AsyncSession,
    subscriber_ref: str,
    *,
    window: timedelta,
    now: datetime | None = None,
) -> int:
    await ensure_device_tables(db)
    cutoff = _to_db_datetime((now or datetime.now(UTC)) - window)
    statement = text(
        f"""
        SELECT COUNT(*)
        FROM {DEVICES_TABLE}
        WHERE
            subscriber_ref = :subscriber_ref
            AND is_revoked = FALSE
            AND last_seen >= :cutoff
        """
    ).bindparams(bindparam('cutoff', type_=DateTime()))
    result = await db.execute(statement, {'subscriber_ref': subscriber_ref, 'cutoff': cutoff})
    return int(result.scalar_one() or 0)


async def upsert_device(
    db: AsyncSession,
    *,
    subscriber_ref: str,
    fingerprint: str,
    user_agent: str,
    display_name: str,
    platform: str,
    ip: str | None,
    country: str | None,
    now: datetime | None = None,
) -> DeviceUpsertResult:
    """Insert the device or refresh last_seen/ip/country of the existing row.

    is_revoked is never touched here. The row was created by this call when
    its request_count is still 1.
    """
    await ensure_device_tables(db)
    statement = text(
        f"""
        INSERT INTO {DEVICES_TABLE} (
            id,
            subscriber_ref,
            fingerprint,
            user_agent,
            display_name,
            platform,
            ip,
            country,
            request_count,
            is_revoked,
            last_seen,
            created_at
        )
        VALUES (
            :id,
            :subscriber_ref,
            :fingerprint,
            :user_agent,
            :display_name,
            :platform,
            :ip,
            :country,
            1,
            FALSE,
            :now,
            :now
        )
        ON CONFLICT (subscriber_ref, fingerprint) DO UPDATE SET
            last_seen = excluded.last_seen,
            ip = COALESCE(excluded.ip, {DEVICES_TABLE}.ip),
            country = COALESCE(excluded.country, {DEVICES_TABLE}.country),
            request_count = {DEVICES_TABLE}.request_count + 1
        RETURNING {_DEVICE_COLUMNS}
        """
    ).bindparams(bindparam('now', type_=DateTime()))
    result = await db.execute(
        statement,
        {
            'id': _generate_id(),
            'subscriber_ref': subscriber_ref,
            'fingerprint': fingerprint,
            'user_agent': user_agent,
            'display_name': display_name,
            'platform': platform,
            'ip': ip,
            'country': country,
            'now': _to_db_datetime(now or datetime.now(UTC)),
        },
    )
    row = result.mappings().one()
    await db.commit()
    device = _row_to_device(row)
    return DeviceUpsertResult(device=device, created=device.request_count == 1)


async def get_device(db: AsyncSession, device_id: str) -> SubscriberDevice | None:
    await ensure_device_tables(db)
    result = await db.execute(
        text(f"SELECT {_DEVICE_COLUMNS} FROM {DEVICES_TABLE} WHERE id = :id"),
        {'id': device_id},
    )
    row = result.mappings().first()
    return _row_to_device(row) if row else None


async def list_devices(db: AsyncSession, subscriber_ref: str) -> list[SubscriberDevice]:
    await ensure_device_tables(db)
    result = await db.execute(
        text(
            f"""
            SELECT {_DEVICE_COLUMNS}
            FROM {DEVICES_TABLE}
            WHERE subscriber_ref = :subscriber_ref
            ORDER BY last_seen DESC, id DESC
            """
        ),
        {'subscriber_ref': subscriber_ref},
    )
    return [_row_to_device(row) for row in result.mappings().all()]


async def revoke_device(
    db: AsyncSession,
    device_id: str,
    *,
    subscriber_ref: str | None = None,
    now: datetime | None = None,
) -> bool:
    await ensure_device_tables(db)
    query = f"""
        UPDATE {DEVICES_TABLE}
        SET
            is_revoked = TRUE,
            revoked_at = :now
        WHERE id = :id AND is_revoked = FALSE
    """
    params = {'id': device_id, 'now': _to_db_datetime(now or datetime.now(UTC))}
    if subscriber_ref is not None:
        query += " AND subscriber_ref = :subscriber_ref"
        params['subscriber_ref'] = subscriber_ref

    result = await db.execute(text(query).bindparams(bindparam('now', type_=DateTime())), params)
    await db.commit()
    return bool(result.rowcount)


async def revoke_device_by_fingerprint(
    db: AsyncSession,
    subscriber_ref: str,
    fingerprint: str,
    *,
    now: datetime | None = None,
) -> bool:
    await ensure_device_tables(db)
    statement = text(
        f"""
        UPDATE {DEVICES_TABLE}
        SET
            is_revoked = TRUE,
            revoked_at = :now
        WHERE
            subscriber_ref = :subscriber_ref
            AND fingerprint = :fingerprint
            AND is_revoked = FALSE
        """
    ).bindparams(bindparam('now', type_=DateTime()))
    result = await db.execute(
        statement,
        {
            'subscriber_ref': subscriber_ref,
            'fingerprint': fingerprint,
            'now': _to_db_datetime(now or datetime.now(UTC)),
        },
    )
    await db.commit()
    return bool(result.rowcount)
