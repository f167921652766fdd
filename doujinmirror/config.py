#!/usr/bin/env python3
# -*- coding: utf-8 -*-
from __future__ import annotations

import os
import pathlib
import sys
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv


def _get_base_dir() -> pathlib.Path:
    if getattr(sys, "frozen", False):
        return pathlib.Path(sys.executable).resolve().parent
    return pathlib.Path.cwd()


BASE_DIR = _get_base_dir()
ENV_PATH = BASE_DIR / ".env"


def _resolve_dir(env_key: str, default_name: str) -> pathlib.Path:
    candidate = os.getenv(env_key, "").strip()
    if candidate:
        path = pathlib.Path(candidate).expanduser()
        if not path.is_absolute():
            path = BASE_DIR / path
        return path
    return BASE_DIR / default_name


def _env_int(key: str, default: int) -> int:
    raw = os.getenv(key, "").strip()
    try:
        return int(raw) if raw else default
    except ValueError:
        return default


def _env_float(key: str, default: float) -> float:
    raw = os.getenv(key, "").strip()
    try:
        return float(raw) if raw else default
    except ValueError:
        return default


def _env_bool(key: str, default: bool) -> bool:
    raw = os.getenv(key, "").strip().lower()
    if not raw:
        return default
    return raw not in ("0", "false", "no", "off")


def _env_str(key: str) -> Optional[str]:
    value = os.getenv(key, "").strip()
    return value or None


@dataclass(frozen=True)
class Settings:
    host: str = "0.0.0.0"
    port: int = 5000
    source_base_url: str = "https://doujindesu.tv/"

    pool_size: int = 3
    pool_recycle_seconds: float = 3600.0
    headless: bool = True
    browser_executable: Optional[str] = None

    nav_timeout: float = 10.0
    rehost_timeout: float = 30.0
    image_fetch_timeout: float = 20.0
    proxy_timeout: float = 15.0

    cache_ttl: float = 1800.0
    db_path: pathlib.Path = BASE_DIR / "doujinmirror.db"
    manifest_dir: pathlib.Path = BASE_DIR

    r2_account_id: Optional[str] = None
    r2_access_key_id: Optional[str] = None
    r2_secret_access_key: Optional[str] = None
    r2_bucket_name: str = "doujin"
    r2_public_url: Optional[str] = None
    local_cdn_dir: pathlib.Path = BASE_DIR / "cdn"
    local_cdn_url: str = "http://127.0.0.1:5000/cdn"
    cdn_prefix: str = "uploads"

    rate_limit: int = 60
    rate_window: float = 60.0
    proxy_promote_after: int = 3

    log_dir: pathlib.Path = BASE_DIR / "logs"
    telegram_bot_token: Optional[str] = None
    admin_chat_id: Optional[str] = None

    @property
    def r2_configured(self) -> bool:
        return bool(
            self.r2_account_id
            and self.r2_access_key_id
            and self.r2_secret_access_key
            and self.r2_public_url
        )


def load_settings(env_path: Optional[pathlib.Path] = None) -> Settings:
    """Load ``.env`` (if any) and build the process settings from the environment."""
    env_file = env_path or ENV_PATH
    if env_file.exists():
        load_dotenv(env_file)
    else:
        load_dotenv()

    return Settings(
        host=os.getenv("HOST", "0.0.0.0").strip() or "0.0.0.0",
        port=_env_int("PORT", 5000),
        source_base_url=(os.getenv("SOURCE_BASE_URL", "").strip() or "https://doujindesu.tv/").rstrip("/") + "/",
        pool_size=max(1, _env_int("POOL_SIZE", 3)),
        pool_recycle_seconds=_env_float("POOL_RECYCLE_SECONDS", 3600.0),
        headless=_env_bool("HEADLESS", True),
        browser_executable=_env_str("BROWSER_EXECUTABLE"),
        nav_timeout=_env_float("NAV_TIMEOUT", 10.0),
        rehost_timeout=_env_float("REHOST_TIMEOUT", 30.0),
        image_fetch_timeout=_env_float("IMAGE_FETCH_TIMEOUT", 20.0),
        proxy_timeout=_env_float("PROXY_TIMEOUT", 15.0),
        cache_ttl=_env_float("CACHE_TTL", 1800.0),
        db_path=_resolve_dir("DB_PATH", "doujinmirror.db"),
        manifest_dir=_resolve_dir("MANIFEST_DIR", "."),
        r2_account_id=_env_str("R2_ACCOUNT_ID"),
        r2_access_key_id=_env_str("R2_ACCESS_KEY_ID"),
        r2_secret_access_key=_env_str("R2_SECRET_ACCESS_KEY"),
        r2_bucket_name=_env_str("R2_BUCKET_NAME") or "doujin",
        r2_public_url=_env_str("R2_PUBLIC_URL"),
        local_cdn_dir=_resolve_dir("LOCAL_CDN_DIR", "cdn"),
        local_cdn_url=_env_str("LOCAL_CDN_URL") or "http://127.0.0.1:5000/cdn",
        cdn_prefix=(os.getenv("CDN_PREFIX", "uploads").strip().strip("/")),
        rate_limit=max(1, _env_int("RATE_LIMIT", 60)),
        rate_window=_env_float("RATE_WINDOW", 60.0),
        proxy_promote_after=_env_int("PROXY_PROMOTE_AFTER", 3),
        log_dir=_resolve_dir("LOG_DIR", "logs"),
        telegram_bot_token=_env_str("TELEGRAM_BOT_TOKEN"),
        admin_chat_id=_env_str("ADMIN_CHAT_ID"),
    )
