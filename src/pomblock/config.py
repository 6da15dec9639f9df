from __future__ import annotations

import copy
import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .errors import InvalidConfigError, SerializationError, WorkspaceIOError
from .parsing import parse_datetime_input
from .policy import (
    GenerationSettings,
    OverrideMode,
    PolicyConfig,
    PolicyOverride,
    PolicyValues,
    apply_policy_override,
    load_zone,
    validate_config,
)
from .routines import BlockTemplate, Routine, routine_from_json, template_from_json

log = logging.getLogger("pomblock")

CONFIG_SCHEMA_VERSION = 1
DEFAULT_ACCOUNT = "default"

DEFAULT_CONFIGS: dict[str, dict[str, Any]] = {
    "app.json": {
        "schema": 1,
        "appName": "PomBlock",
        "timezone": "UTC",
        "blocksCalendarName": "PomBlock",
    },
    "calendars.json": {
        "schema": 1,
        "blocksCalendarId": None,
        "blocksCalendarIds": {},
    },
    "policies.json": {
        "schema": 1,
        "workHours": {
            "start": "09:00",
            "end": "18:00",
            "days": ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday"],
        },
        "generation": {
            "autoEnabled": True,
            "autoTime": "05:30",
            "catchUpOnAppStart": True,
            "respectSuppression": True,
            "maxAutoBlocksPerDay": 16,
            "maxRelocationsPerSync": 50,
        },
        "blockDurationMinutes": 50,
        "breakDurationMinutes": 10,
        "minBlockGapMinutes": 5,
    },
    "templates.json": {"schema": 1, "templates": []},
    "routines.json": {"schema": 1, "routines": []},
    "overrides.json": {"schema": 1, "mode": "none", "value": {}},
}


@dataclass(frozen=True)
class WorkspacePaths:
    root: Path

    @property
    def config_dir(self) -> Path:
        return self.root / "config"

    @property
    def logs_dir(self) -> Path:
        return self.root / "logs"

    @property
    def command_log_path(self) -> Path:
        return self.logs_dir / "commands.log"

    @property
    def database_path(self) -> Path:
        return self.root / "state.sqlite3"

    def ensure(self) -> None:
        try:
            self.config_dir.mkdir(parents=True, exist_ok=True)
            self.logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise WorkspaceIOError(f"cannot create workspace at {self.root}: {exc}") from exc


def workspace_from_env(lookup: Callable[[str], Optional[str]] = os.getenv) -> WorkspacePaths:
    root = (lookup("POMBLOCK_WORKSPACE") or "").strip() or ".pomblock"
    return WorkspacePaths(root=Path(root).expanduser())


@dataclass(frozen=True)
class AppSettings:
    app_name: str
    time_zone: str
    blocks_calendar_name: str


class PolicyDocument(PolicyValues):
    """policies.json"""

    generation: Optional[GenerationSettings] = None

    def to_policy(self, *, app_time_zone: str) -> PolicyConfig:
        fields: dict[str, Any] = {"time_zone": app_time_zone}
        fields.update(self.policy_fields())
        if self.generation is not None:
            fields.update(self.generation.policy_fields())
        load_zone(fields["time_zone"])
        return PolicyConfig(**fields)


class OverrideDocument(BaseModel):
    """overrides.json"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    mode: OverrideMode = OverrideMode.NONE
    value: PolicyValues = Field(default_factory=PolicyValues)
    weight: float = Field(default=1.0, ge=0.0, le=1.0)
    valid_from: Optional[datetime] = None
    valid_to: Optional[datetime] = None

    @field_validator("mode", mode="before")
    @classmethod
    def _lower_mode(cls, value: Any) -> Any:
        return str(value or "none").strip().lower()

    @field_validator("value", mode="before")
    @classmethod
    def _empty_value(cls, value: Any) -> Any:
        return value or {}

    @field_validator("valid_from", "valid_to", mode="before")
    @classmethod
    def _instant(cls, value: Any) -> Any:
        if value is None or value == "":
            return None
        try:
            return parse_datetime_input(str(value), "validity bound")
        except InvalidConfigError as exc:
            raise ValueError(str(exc)) from exc

    def to_override(self) -> PolicyOverride:
        return PolicyOverride(
            mode=self.mode,
            value=self.value,
            weight=self.weight,
            valid_from=self.valid_from,
            valid_to=self.valid_to,
        )


def policy_from_document(doc: dict[str, Any], *, app_time_zone: str) -> PolicyConfig:
    return validate_config(PolicyDocument, doc, "policies.json").to_policy(app_time_zone=app_time_zone)


def override_from_document(doc: dict[str, Any]) -> PolicyOverride:
    return validate_config(OverrideDocument, doc, "overrides.json").to_override()


class WorkspaceConfig:
    """Schema-versioned JSON documents under <workspace>/config."""

    def __init__(self, config_dir: str | Path) -> None:
        self.config_dir = Path(config_dir)

    def ensure_defaults(self) -> list[Path]:
        created: list[Path] = []
        for name, doc in DEFAULT_CONFIGS.items():
            path = self.config_dir / name
            if path.exists():
                continue
            self.write_document(name, doc)
            created.append(path)
        if created:
            log.info("Created default config files: %s", ", ".join(p.name for p in created))
        return created

    def read_document(self, name: str) -> dict[str, Any]:
        path = self.config_dir / name
        if not path.exists():
            return copy.deepcopy(DEFAULT_CONFIGS[name])
        try:
            raw = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise WorkspaceIOError(f"cannot read {path}: {exc}") from exc
        try:
            doc = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise SerializationError(f"invalid JSON in {name}: {exc.msg}") from exc
        if not isinstance(doc, dict):
            raise InvalidConfigError(f"{name} must contain a JSON object")
        if doc.get("schema") != CONFIG_SCHEMA_VERSION:
            raise InvalidConfigError(
                f"{name}: unsupported schema {doc.get('schema')!r} (expected {CONFIG_SCHEMA_VERSION})"
            )
        return doc

    def write_document(self, name: str, doc: dict[str, Any]) -> None:
        path = self.config_dir / name
        tmp = path.with_suffix(path.suffix + ".tmp")
        try:
            self.config_dir.mkdir(parents=True, exist_ok=True)
            tmp.write_text(json.dumps(doc, indent=2) + "\n", encoding="utf-8")
            os.replace(tmp, path)
        except OSError as exc:
            raise WorkspaceIOError(f"cannot write {path}: {exc}") from exc

    def app_settings(self) -> AppSettings:
        doc = self.read_document("app.json")
        tz_name = str(doc.get("timezone") or "UTC")
        load_zone(tz_name)
        return AppSettings(
            app_name=str(doc.get("appName") or "PomBlock"),
            time_zone=tz_name,
            blocks_calendar_name=str(doc.get("blocksCalendarName") or "PomBlock"),
        )

    def policy(self, *, now: datetime) -> PolicyConfig:
        base = policy_from_document(
            self.read_document("policies.json"),
            app_time_zone=self.app_settings().time_zone,
        )
        return apply_policy_override(base, override_from_document(self.read_document("overrides.json")), now=now)

    def templates(self) -> list[BlockTemplate]:
        items = self.read_document("templates.json").get("templates") or []
        if not isinstance(items, list):
            raise InvalidConfigError("templates.json: templates must be a list")
        return [template_from_json(t) for t in items]

    def routines(self) -> list[Routine]:
        items = self.read_document("routines.json").get("routines") or []
        if not isinstance(items, list):
            raise InvalidConfigError("routines.json: routines must be a list")
        return [routine_from_json(r) for r in items]

    def blocks_calendar_id(self, account_id: str) -> Optional[str]:
        doc = self.read_document("calendars.json")
        by_account = doc.get("blocksCalendarIds") or {}
        value = by_account.get(account_id) if isinstance(by_account, dict) else None
        if not value and account_id == DEFAULT_ACCOUNT:
            value = doc.get("blocksCalendarId")
        value = str(value).strip() if value else ""
        return value or None

    def save_blocks_calendar_id(self, account_id: str, calendar_id: str) -> None:
        doc = self.read_document("calendars.json")
        by_account = doc.get("blocksCalendarIds")
        if not isinstance(by_account, dict):
            by_account = {}
        by_account[account_id] = calendar_id
        doc["blocksCalendarIds"] = by_account
        if account_id == DEFAULT_ACCOUNT:
            doc["blocksCalendarId"] = calendar_id
        self.write_document("calendars.json", doc)
