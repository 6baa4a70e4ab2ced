"""
Runtime configuration read from the environment.

Every knob has a default in code, so a bare ``Settings.from_env()`` works for
local development.  Services read settings once at start-up and pass the
object down explicitly; nothing in the core reads ``os.environ`` directly.
"""
import os
import logging
from dataclasses import dataclass
from enum import Enum


class AbstentionPolicy(str, Enum):
    """How much of the ballot a voter must fill before a cast is accepted."""

    ALLOW_EMPTY = "allow_empty"
    REQUIRE_ANY = "require_any"
    REQUIRE_EACH = "require_each"


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)).strip() or default)


def _env_bool(name: str, default: bool) -> bool:
    return os.getenv(name, "true" if default else "false").lower() == "true"


@dataclass(frozen=True)
class Settings:
    store_backend: str = "postgres"

    db_host: str = "postgres"
    db_port: int = 5432
    db_name: str = "voting_db"
    db_user: str = "voting_user"
    db_password: str = "voting_pass"
    db_pool_min: int = 2
    db_pool_max: int = 20

    otp_length: int = 6
    otp_ttl_minutes: int = 10
    otp_max_attempts: int = 5
    ballot_token_ttl_minutes: int = 30
    abstention_policy: AbstentionPolicy = AbstentionPolicy.REQUIRE_ANY

    officer_jwt_secret: str = "officer-secret-change-in-production"
    officer_jwt_ttl_hours: int = 12

    smtp_host: str = "smtp.gmail.com"
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_pass: str = ""
    smtp_use_tls: bool = True
    smtp_from: str = "evote.verify@example.com"

    sms_gateway_url: str = ""
    sms_gateway_key: str = ""
    sms_sender_id: str = "EVOTE"

    upload_dir: str = "uploads"
    upload_url_prefix: str = "/uploads"
    max_upload_bytes: int = 5 * 1024 * 1024

    election_title: str = "Student Union Elections"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            store_backend=os.getenv("STORE_BACKEND", "postgres").lower(),
            db_host=os.getenv("DB_HOST", "postgres"),
            db_port=_env_int("DB_PORT", 5432),
            db_name=os.getenv("DB_NAME", "voting_db"),
            db_user=os.getenv("DB_USER", "voting_user"),
            db_password=os.getenv("DB_PASSWORD", "voting_pass"),
            db_pool_min=_env_int("DB_POOL_MIN", 2),
            db_pool_max=_env_int("DB_POOL_MAX", 20),
            otp_length=_env_int("OTP_LENGTH", 6),
            otp_ttl_minutes=_env_int("OTP_TTL_MINUTES", 10),
            otp_max_attempts=_env_int("OTP_MAX_ATTEMPTS", 5),
            ballot_token_ttl_minutes=_env_int("BALLOT_TOKEN_TTL_MINUTES", 30),
            abstention_policy=AbstentionPolicy(
                os.getenv("ABSTENTION_POLICY", AbstentionPolicy.REQUIRE_ANY.value).lower()
            ),
            officer_jwt_secret=os.getenv(
                "OFFICER_JWT_SECRET", "officer-secret-change-in-production"
            ),
            officer_jwt_ttl_hours=_env_int("OFFICER_JWT_TTL_HOURS", 12),
            smtp_host=os.getenv("SMTP_HOST", "smtp.gmail.com"),
            smtp_port=_env_int("SMTP_PORT", 587),
            smtp_user=os.getenv("SMTP_USER", ""),
            smtp_pass=os.getenv("SMTP_PASS", ""),
            smtp_use_tls=_env_bool("SMTP_USE_TLS", True),
            smtp_from=os.getenv("SMTP_FROM", "evote.verify@example.com"),
            sms_gateway_url=os.getenv("SMS_GATEWAY_URL", ""),
            sms_gateway_key=os.getenv("SMS_GATEWAY_KEY", ""),
            sms_sender_id=os.getenv("SMS_SENDER_ID", "EVOTE"),
            upload_dir=os.getenv("UPLOAD_DIR", "uploads"),
            upload_url_prefix=os.getenv("UPLOAD_URL_PREFIX", "/uploads").rstrip("/"),
            max_upload_bytes=_env_int("MAX_UPLOAD_BYTES", 5 * 1024 * 1024),
            election_title=os.getenv("ELECTION_TITLE", "Student Union Elections"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )


def configure_logging(level: str = "INFO") -> None:
    """Install the shared log format on the root logger (idempotent)."""
    root = logging.getLogger()
    root.setLevel(level)
    if any(getattr(h, "_evote", False) for h in root.handlers):
        return
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(
        "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))
    handler._evote = True
    root.addHandler(handler)
