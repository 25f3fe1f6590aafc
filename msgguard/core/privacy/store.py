from __future__ import annotations

import time
from typing import Any, Callable, Dict, List, Optional

from msgguard.core.classification.models import UserRole
from msgguard.core.events import EventSeverity, SourceSubsystem, emit
from msgguard.core.privacy.models import ConsentGrant, DataCategory, UserProfile
from msgguard.core.sqlite import SqliteStore


class ProfileStore(SqliteStore):
    """
    User profiles (role, birthdate, enrollment) and explicit consent grants.

    Registered change listeners run synchronously after every committed write,
    so cache invalidation never depends on event delivery. The
    profile.updated / consent.changed events that follow are notifications.
    """

    def __init__(self, *, db_path: str, event_bus: Any = None, logger: Any = None):
        self.event_bus = event_bus
        self.logger = logger
        self._listeners: List[Callable[[str, str], None]] = []
        super().__init__(db_path=db_path)

    def _init_db(self) -> None:
        with self._tx() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS users (
                  user_id TEXT PRIMARY KEY,
                  role TEXT NOT NULL,
                  display_name TEXT,
                  birthdate TEXT,
                  enrolled INTEGER NOT NULL DEFAULT 1,
                  updated_at REAL NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS consent_grants (
                  grant_id TEXT PRIMARY KEY,
                  user_id TEXT NOT NULL,
                  data_category TEXT NOT NULL,
                  granted INTEGER NOT NULL,
                  recorded_at REAL NOT NULL,
                  granted_by TEXT,
                  evidence TEXT,
                  UNIQUE(user_id, data_category)
                )
                """
            )

    # ---- change listeners ----
    def add_change_listener(self, listener: Callable[[str, str], None]) -> None:
        """
        listener(kind, user_id) with kind "profile.updated" or "consent.changed".
        """
        self._listeners.append(listener)

    def _notify(self, kind: str, user_id: str) -> None:
        for listener in list(self._listeners):
            try:
                listener(kind, user_id)
            except Exception as e:  # noqa: BLE001
                if self.logger:
                    self.logger.error(f"Change listener failed for {kind} {user_id}: {e}")

    # ---- profiles ----
    def upsert_profile(self, profile: UserProfile, *, trace_id: str = "profiles") -> None:
        if not isinstance(profile, UserProfile):
            profile = UserProfile.model_validate(profile)
        with self._tx() as conn:
            conn.execute(
                """
                INSERT INTO users(user_id, role, display_name, birthdate, enrolled, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                  role=excluded.role,
                  display_name=excluded.display_name,
                  birthdate=excluded.birthdate,
                  enrolled=excluded.enrolled,
                  updated_at=excluded.updated_at
                """,
                (profile.user_id, profile.role.value, profile.display_name, profile.birthdate, 1 if profile.enrolled else 0, float(profile.updated_at)),
            )
        self._notify("profile.updated", profile.user_id)
        emit(self.event_bus, "profile.updated", SourceSubsystem.profiles, {"user_id": profile.user_id}, trace_id=trace_id)

    def get_profile(self, user_id: str) -> Optional[UserProfile]:
        with self._read() as conn:
            row = conn.execute(
                "SELECT user_id, role, display_name, birthdate, enrolled, updated_at FROM users WHERE user_id=?",
                (str(user_id),),
            ).fetchone()
        if not row:
            return None
        return UserProfile(
            user_id=row["user_id"],
            role=UserRole(row["role"]),
            display_name=row["display_name"] or "",
            birthdate=row["birthdate"],
            enrolled=bool(row["enrolled"]),
            updated_at=float(row["updated_at"]),
        )

    def get_birthdate(self, user_id: str) -> Optional[str]:
        with self._read() as conn:
            row = conn.execute("SELECT birthdate FROM users WHERE user_id=?", (str(user_id),)).fetchone()
        return (row["birthdate"] or None) if row else None

    def count_users(self) -> int:
        with self._read() as conn:
            row = conn.execute("SELECT COUNT(1) FROM users").fetchone()
        return int(row[0] if row else 0)

    # ---- consent ----
    def set_consent(
        self,
        *,
        user_id: str,
        data_category: DataCategory,
        granted: bool,
        granted_by: str = "",
        evidence: str = "",
        trace_id: str = "consent",
    ) -> ConsentGrant:
        rec = ConsentGrant(user_id=str(user_id), data_category=DataCategory(data_category), granted=bool(granted), granted_by=granted_by, evidence=evidence, recorded_at=time.time())
        with self._tx() as conn:
            conn.execute(
                """
                INSERT INTO consent_grants(grant_id, user_id, data_category, granted, recorded_at, granted_by, evidence)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id, data_category) DO UPDATE SET
                  granted=excluded.granted,
                  recorded_at=excluded.recorded_at,
                  granted_by=excluded.granted_by,
                  evidence=excluded.evidence
                """,
                (rec.grant_id, rec.user_id, rec.data_category.value, 1 if rec.granted else 0, rec.recorded_at, rec.granted_by, rec.evidence),
            )
        self._notify("consent.changed", rec.user_id)
        emit(
            self.event_bus,
            "consent.changed",
            SourceSubsystem.consent,
            {"user_id": rec.user_id, "data_category": rec.data_category.value, "granted": rec.granted},
            severity=EventSeverity.INFO,
            trace_id=trace_id,
        )
        return rec

    def get_consents(self, user_id: str) -> Dict[DataCategory, ConsentGrant]:
        with self._read() as conn:
            rows = conn.execute(
                "SELECT grant_id, user_id, data_category, granted, recorded_at, granted_by, evidence FROM consent_grants WHERE user_id=?",
                (str(user_id),),
            ).fetchall()
        out: Dict[DataCategory, ConsentGrant] = {}
        for r in rows:
            try:
                cat = DataCategory(str(r["data_category"]))
            except ValueError:
                # category retired from configuration; ignore
                continue
            out[cat] = ConsentGrant(
                grant_id=r["grant_id"],
                user_id=r["user_id"],
                data_category=cat,
                granted=bool(r["granted"]),
                recorded_at=float(r["recorded_at"]),
                granted_by=r["granted_by"] or "",
                evidence=r["evidence"] or "",
            )
        return out

