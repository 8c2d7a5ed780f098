import json
import logging
import os
import random
import tempfile
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Optional

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

STORE_FILENAME = "otp_store.json"


class StorageError(Exception):
    """Backing OTP file could not be read, written, or parsed"""


@dataclass
class StoreConfig:
    """OTP store configuration class"""

    storage_dir: str = "otp_storage"
    # Seconds an OTP stays valid; also the age at which a sweep removes it
    verification_window: int = 300


@dataclass
class OTPRecord:
    email: str
    code: str
    issued_at: int
    created_at: str = ""

    def to_dict(self) -> Dict:
        return {
            "email": self.email,
            "otp": self.code,
            "timestamp": self.issued_at,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "OTPRecord":
        code = data.get("otp")
        issued_at = data.get("timestamp")
        if not isinstance(code, str):
            raise ValueError(f"OTP record has no code: {data.get('email')!r}")
        if type(issued_at) is not int:
            raise ValueError(f"OTP record has no timestamp: {data.get('email')!r}")
        return cls(
            email=str(data.get("email", "")),
            code=code,
            issued_at=issued_at,
            created_at=str(data.get("createdAt", "")),
        )


def now_ms() -> int:
    return int(time.time() * 1000)


def generate_otp() -> str:
    """Random 6-digit code in [100000, 999999]"""
    return str(random.randint(100000, 999999))


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


class OTPStore:
    """File-backed OTP store keyed by email.

    All records live in one JSON document which is replaced atomically on
    every write. Each public method holds ``_lock`` for its whole duration,
    so concurrent requests see either the state before or after an
    operation, never a partial one.

    Expired records are reclaimed two ways: ``lookup`` drops the single
    record it finds expired, and ``cleanup_sweep`` (run before every
    ``issue`` and ``list_all``) drops all of them.
    """

    def __init__(
        self,
        config: Optional[StoreConfig] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.config = config or StoreConfig()
        self.clock = clock
        self.storage_dir = Path(self.config.storage_dir)
        self.path = self.storage_dir / STORE_FILENAME
        self._lock = threading.Lock()

        try:
            self.storage_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(
                f"Cannot create OTP storage directory {self.storage_dir}: {e}"
            ) from e

    @property
    def window_ms(self) -> int:
        return self.config.verification_window * 1000

    # ==================== PUBLIC API ====================

    def generate_code(self) -> str:
        return generate_otp()

    def issue(self, email: str, code: str) -> OTPRecord:
        """Store ``code`` for ``email``, replacing any earlier record.

        Raises StorageError if the record could not be durably written.
        """
        key = normalize_email(email)
        if not key:
            raise ValueError("Email is required")

        with self._lock:
            records = self._load()
            now = self.clock()
            self._purge_expired(records, now, save=False)

            record = OTPRecord(
                email=key,
                code=str(code),
                issued_at=now,
                created_at=datetime.fromtimestamp(now / 1000, tz=timezone.utc).isoformat(),
            )
            records[key] = record
            self._save(records)

        logger.info(f"OTP issued for {key}")
        return record

    def lookup(self, email: str) -> Optional[str]:
        """Return the live code for ``email`` or None.

        Storage failures count as "no OTP" so a broken store can never
        validate a code.
        """
        key = normalize_email(email)
        if not key:
            return None

        with self._lock:
            try:
                records = self._load()
            except StorageError as e:
                logger.error(f"❌ Error reading OTP for {key}: {e}")
                return None

            record = records.get(key)
            if record is None:
                return None

            if not self._is_expired(record, self.clock()):
                return record.code

            del records[key]
            try:
                self._save(records)
            except StorageError as e:
                logger.error(f"❌ Error removing expired OTP for {key}: {e}")
            logger.info(f"OTP expired for {key}")
            return None

    def revoke(self, email: str) -> bool:
        key = normalize_email(email)
        if not key:
            return False

        with self._lock:
            records = self._load()
            if key not in records:
                return False
            del records[key]
            self._save(records)

        logger.info(f"OTP revoked for {key}")
        return True

    def consume(self, email: str, code: str) -> bool:
        """Delete the record for ``email`` if it is live and holds ``code``.

        The check and the delete happen under one hold of the lock, so a code
        verifies at most once. A wrong code leaves the record in place. Read
        failures count as no match; a failed delete raises StorageError.
        """
        key = normalize_email(email)
        if not key:
            return False

        with self._lock:
            try:
                records = self._load()
            except StorageError as e:
                logger.error(f"❌ Error reading OTP for {key}: {e}")
                return False

            record = records.get(key)
            if record is None:
                return False

            if self._is_expired(record, self.clock()):
                del records[key]
                try:
                    self._save(records)
                except StorageError as e:
                    logger.error(f"❌ Error removing expired OTP for {key}: {e}")
                logger.info(f"OTP expired for {key}")
                return False

            if record.code != str(code).strip():
                return False

            del records[key]
            self._save(records)

        logger.info(f"OTP verified and consumed for {key}")
        return True

    def cleanup_sweep(self) -> int:
        """Delete every expired record; returns how many were removed."""
        with self._lock:
            records = self._load()
            return self._purge_expired(records, self.clock())

    def list_all(self) -> Dict[str, str]:
        """Live email -> code mapping (debugging only)"""
        with self._lock:
            records = self._load()
            self._purge_expired(records, self.clock())
            return {email: record.code for email, record in records.items()}

    # ==================== INTERNALS ====================
    # Callers must hold self._lock.

    def _is_expired(self, record: OTPRecord, now: int) -> bool:
        return now - record.issued_at > self.window_ms

    def _purge_expired(
        self, records: Dict[str, OTPRecord], now: int, save: bool = True
    ) -> int:
        expired = [
            email for email, record in records.items() if self._is_expired(record, now)
        ]
        if not expired:
            return 0

        for email in expired:
            del records[email]
        if save:
            self._save(records)
        logger.info(f"🧹 Removed {len(expired)} expired OTP(s)")
        return len(expired)

    def _load(self) -> Dict[str, OTPRecord]:
        if not self.path.exists():
            return {}

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                raw = json.load(f)
            if not isinstance(raw, dict):
                raise ValueError("OTP store root is not an object")

            records = {}
            for email, data in raw.items():
                if not isinstance(data, dict):
                    raise ValueError(f"Malformed OTP record for {email!r}")
                records[email] = OTPRecord.from_dict(data)
            return records
        except (OSError, ValueError) as e:
            raise StorageError(f"Cannot read OTP store {self.path}: {e}") from e

    def _save(self, records: Dict[str, OTPRecord]):
        payload = {email: record.to_dict() for email, record in records.items()}
        tmp_path = None
        try:
            with tempfile.NamedTemporaryFile(
                "w",
                encoding="utf-8",
                dir=self.storage_dir,
                prefix=".otp_store.",
                suffix=".tmp",
                delete=False,
            ) as tmp:
                tmp_path = tmp.name
                json.dump(payload, tmp, indent=2)
                tmp.flush()
                os.fsync(tmp.fileno())
            os.replace(tmp_path, self.path)
        except (OSError, TypeError, ValueError) as e:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise StorageError(f"Cannot write OTP store {self.path}: {e}") from e
