"""
schedconf.py

Normalization and validation of scheduled-job configuration documents.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, FrozenSet, Mapping, Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError, available_timezones

import yaml
from tzlocal import get_localzone


LOG_LEVEL_ENV = "SCHEDCONF_LOG_LEVEL"
TIMEZONE_ENV = "SCHEDCONF_TIMEZONE"
SERVICE_PREFIX_ENV = "SCHEDCONF_SERVICE_PREFIX"

# Local wall-clock time; the zone travels separately in timeZone.
TIME_FORMAT = "%Y-%m-%dT%H:%M:%S"
DEFAULT_SERVICE_PREFIX = "org.forgerock.openidm."
SERVICE_SEPARATOR = "."
DEFAULT_INVOKE_LOG_LEVEL = "info"
UTC = timezone.utc

# Files in the tz database that are not zones of their own.
NON_ZONE_KEYS = frozenset({"posixrules", "localtime", "Factory"})

MISFIRE_POLICY_FIRE_AND_PROCEED = "fire_and_proceed"
MISFIRE_POLICY_DO_NOTHING = "do_nothing"
VALID_MISFIRE_POLICIES = (MISFIRE_POLICY_FIRE_AND_PROCEED, MISFIRE_POLICY_DO_NOTHING)

SCHEDULE_ENABLED = "enabled"
SCHEDULE_PERSISTED = "persisted"
SCHEDULE_CONCURRENT_EXECUTION = "concurrentExecution"
SCHEDULE_MISFIRE_POLICY = "misfirePolicy"
SCHEDULE_TYPE = "triggerType"
SCHEDULE_CRON_SCHEDULE = "cronSchedule"
SCHEDULE_TIME_ZONE = "timeZone"
SCHEDULE_START_TIME = "startTime"
SCHEDULE_END_TIME = "endTime"
SCHEDULE_INVOKE_SERVICE = "invokeService"
SCHEDULE_INVOKE_CONTEXT = "invokeContext"
SCHEDULE_INVOKE_LOG_LEVEL = "invokeLogLevel"

# Fields the scheduling engine may patch after validation, keyed to document keys.
UPDATABLE_FIELDS = {
    "enabled": SCHEDULE_ENABLED,
    "persisted": SCHEDULE_PERSISTED,
    "invoke_service": SCHEDULE_INVOKE_SERVICE,
    "invoke_context": SCHEDULE_INVOKE_CONTEXT,
    "concurrent_execution": SCHEDULE_CONCURRENT_EXECUTION,
}


class ScheduleError(Exception):
    """Base error for schedconf."""


class ValidationError(ScheduleError):
    """Schedule config validation error (a bad request)."""

    status = 400


class InvalidTimeError(ValidationError, ValueError):
    """Start or end time that does not match TIME_FORMAT or falls in a DST gap."""


def setup_logging() -> logging.Logger:
    logger = logging.getLogger("schedconf")
    if logger.handlers:
        return logger
    logger.setLevel(os.environ.get(LOG_LEVEL_ENV, "WARNING").upper())
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)
    return logger


logger = setup_logging()


class TriggerType(str, Enum):
    CRON = "cron"
    SIMPLE = "simple"


class _Missing:
    """Marker for a key that is absent, as opposed to present with null."""

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()


class ConfigValue:
    """
    A value at a path inside a configuration document.

    Wraps one of missing, null, bool, str, number or a nested document, and
    offers the small access contract the decoder needs: path lookup, default
    substitution and typed extraction.
    """

    __slots__ = ("_raw", "path")

    def __init__(self, raw: Any, path: str = "") -> None:
        self._raw = raw
        self.path = path

    def __repr__(self) -> str:
        return f"ConfigValue({self._raw!r}, path={self.path!r})"

    def get(self, key: str) -> "ConfigValue":
        child_path = f"{self.path}/{key}"
        if isinstance(self._raw, Mapping):
            return ConfigValue(self._raw.get(key, MISSING), child_path)
        return ConfigValue(MISSING, child_path)

    def is_missing(self) -> bool:
        return self._raw is MISSING

    def is_null(self) -> bool:
        return self._raw is MISSING or self._raw is None

    def is_string(self) -> bool:
        return isinstance(self._raw, str)

    def default_to(self, default: Any) -> "ConfigValue":
        if self.is_null():
            return ConfigValue(default, self.path)
        return self

    def as_string(self) -> Optional[str]:
        if self.is_null():
            return None
        if not isinstance(self._raw, str):
            raise ValidationError(
                f"Error: {self.path} must be a string, got {type(self._raw).__name__}."
            )
        return self._raw

    def as_boolean(self) -> Optional[bool]:
        if self.is_null():
            return None
        if not isinstance(self._raw, bool):
            raise ValidationError(f"Error: {self.path} must be true or false.")
        return self._raw

    def get_object(self) -> Any:
        return None if self._raw is MISSING else self._raw


def is_blank(value: Optional[str]) -> bool:
    return value is None or not value.strip()


def coerce_flag(value: ConfigValue, default: bool) -> bool:
    """
    Resolve a flag given as a native bool or as text.

    Text is deliberately permissive: only "true" (any case) is True and every
    other string, including garbage, is False rather than an error.
    """
    if value.is_string():
        text = value.as_string()
        if text.lower() not in ("true", "false"):
            logger.warning('Treating unrecognized flag "%s" at %s as false.', text, value.path)
        return text.lower() == "true"
    return value.default_to(default).as_boolean()


def system_timezone() -> ZoneInfo:
    try:
        return get_localzone()
    except (ZoneInfoNotFoundError, ValueError) as exc:
        logger.warning("Could not determine the host timezone (%s); using UTC.", exc)
        return ZoneInfo("UTC")


@lru_cache(maxsize=1)
def known_timezones() -> FrozenSet[str]:
    return frozenset(available_timezones()) - NON_ZONE_KEYS


def parse_timezone(name: str) -> ZoneInfo:
    if name not in known_timezones():
        raise ValidationError(f"Error: Scheduler configured timezone is not understood: {name}")
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValidationError(
            f"Error: Scheduler configured timezone is not understood: {name}"
        ) from exc


def parse_trigger_type(value: Optional[str]) -> TriggerType:
    if is_blank(value):
        return TriggerType.CRON
    try:
        return TriggerType(value)
    except ValueError as exc:
        raise ValidationError(f"Error: Specified type value invalid: {value}") from exc


def _is_nonexistent_local(naive: datetime, tz: ZoneInfo) -> bool:
    assumed = naive.replace(tzinfo=tz, fold=0)
    roundtrip = assumed.astimezone(UTC).astimezone(tz).replace(tzinfo=None)
    return roundtrip != naive


def _localize(naive: datetime, tz: ZoneInfo, field_path: str) -> datetime:
    if _is_nonexistent_local(naive, tz):
        raise InvalidTimeError(
            f'Error: {field_path} "{naive.strftime(TIME_FORMAT)}" does not exist in {tz} (DST gap).'
        )
    return naive.replace(tzinfo=tz)


def parse_schedule_time(value: ConfigValue, tz: ZoneInfo) -> Optional[datetime]:
    raw = value.get_object()
    if isinstance(raw, datetime):
        # YAML loaders turn unquoted timestamps into datetime objects.
        return _localize(raw, tz, value.path) if raw.tzinfo is None else raw.astimezone(tz)
    text = value.as_string()
    if is_blank(text):
        return None
    try:
        parsed = datetime.strptime(text, TIME_FORMAT)
    except ValueError as exc:
        raise InvalidTimeError(
            f'Error: {value.path} must match {TIME_FORMAT}, got "{text}".'
        ) from exc
    return _localize(parsed, tz, value.path)


def format_schedule_time(value: Optional[datetime], tz: Optional[ZoneInfo]) -> Optional[str]:
    if value is None:
        return None
    if tz is not None:
        value = value.astimezone(tz)
    return value.strftime(TIME_FORMAT)


@dataclass(frozen=True)
class ScheduleSettings:
    default_timezone: ZoneInfo = field(default_factory=system_timezone)
    service_prefix: str = DEFAULT_SERVICE_PREFIX

    @staticmethod
    def from_env() -> "ScheduleSettings":
        tz_name = os.environ.get(TIMEZONE_ENV, "").strip()
        prefix = os.environ.get(SERVICE_PREFIX_ENV, "").strip()
        return ScheduleSettings(
            default_timezone=parse_timezone(tz_name) if tz_name else system_timezone(),
            service_prefix=prefix or DEFAULT_SERVICE_PREFIX,
        )


@dataclass(frozen=True)
class ScheduleConfig:
    """A validated schedule. Build it with parse_schedule()."""

    enabled: bool
    persisted: bool
    concurrent_execution: bool
    misfire_policy: str
    trigger_type: TriggerType
    invoke_service: str
    cron_schedule: Optional[str] = None
    time_zone: Optional[ZoneInfo] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    invoke_context: Any = None
    invoke_log_level: str = DEFAULT_INVOKE_LOG_LEVEL
    # Zone and prefix this schedule was parsed with.
    settings: Optional[ScheduleSettings] = field(default=None, compare=False, repr=False)

    @property
    def schedule_type(self) -> str:
        return self.trigger_type.value

    def to_config(self) -> Dict[str, Any]:
        return {
            SCHEDULE_ENABLED: self.enabled,
            SCHEDULE_PERSISTED: self.persisted,
            SCHEDULE_MISFIRE_POLICY: self.misfire_policy,
            SCHEDULE_CRON_SCHEDULE: self.cron_schedule,
            SCHEDULE_TYPE: self.schedule_type,
            SCHEDULE_INVOKE_SERVICE: self.invoke_service,
            SCHEDULE_INVOKE_CONTEXT: self.invoke_context,
            SCHEDULE_INVOKE_LOG_LEVEL: self.invoke_log_level,
            SCHEDULE_TIME_ZONE: self.time_zone.key if self.time_zone is not None else None,
            SCHEDULE_START_TIME: format_schedule_time(self.start_time, self.time_zone),
            SCHEDULE_END_TIME: format_schedule_time(self.end_time, self.time_zone),
            SCHEDULE_CONCURRENT_EXECUTION: self.concurrent_execution,
        }

    def updated(self, settings: Optional[ScheduleSettings] = None, **changes: Any) -> "ScheduleConfig":
        """
        Return a re-validated copy with some fields replaced.

        Only enabled, persisted, invoke_service, invoke_context and
        concurrent_execution can be changed this way. Without explicit
        settings the ones this schedule was parsed with are reused, so times
        without a time_zone keep their instant.
        """
        unknown = set(changes) - set(UPDATABLE_FIELDS)
        if unknown:
            raise TypeError(f"Cannot update schedule fields: {sorted(unknown)}")
        config = self.to_config()
        for name, value in changes.items():
            config[UPDATABLE_FIELDS[name]] = value
        return parse_schedule(config, settings or self.settings)


def _describe(config: Mapping[str, Any]) -> str:
    try:
        return json.dumps(config, default=str, sort_keys=True)
    except (TypeError, ValueError):
        return repr(config)


def parse_schedule(
    config: Mapping[str, Any],
    settings: Optional[ScheduleSettings] = None,
) -> ScheduleConfig:
    """
    Validate a raw schedule document and build a ScheduleConfig.

    Raises ValidationError on the first rule that fails; nothing partially
    validated is returned.
    """
    if not isinstance(config, Mapping):
        raise ValidationError("Error: Schedule config must be a mapping.")
    if settings is None:
        settings = ScheduleSettings.from_env()
    root = ConfigValue(config)

    enabled = coerce_flag(root.get(SCHEDULE_ENABLED), True)
    persisted = coerce_flag(root.get(SCHEDULE_PERSISTED), False)
    concurrent_execution = coerce_flag(root.get(SCHEDULE_CONCURRENT_EXECUTION), False)
    misfire_policy = root.get(SCHEDULE_MISFIRE_POLICY).default_to(MISFIRE_POLICY_FIRE_AND_PROCEED).as_string()
    cron_schedule = root.get(SCHEDULE_CRON_SCHEDULE).as_string()
    trigger_type = parse_trigger_type(root.get(SCHEDULE_TYPE).as_string())

    if trigger_type is TriggerType.CRON:
        if is_blank(cron_schedule):
            raise ValidationError("Error: A schedule of type cron must provide a cron schedule.")
        if misfire_policy not in VALID_MISFIRE_POLICIES:
            raise ValidationError(f"Error: Invalid misfire policy: {misfire_policy}")

    invoke_service = root.get(SCHEDULE_INVOKE_SERVICE).as_string()
    if is_blank(invoke_service):
        raise ValidationError(
            f"Error: Invalid scheduler configuration, the {SCHEDULE_INVOKE_SERVICE} property "
            f"needs to be set but is empty. Complete config: {_describe(config)}"
        )
    if SERVICE_SEPARATOR not in invoke_service:
        qualified = settings.service_prefix + invoke_service
        logger.debug("Qualified invoke service %s as %s.", invoke_service, qualified)
        invoke_service = qualified

    invoke_context = root.get(SCHEDULE_INVOKE_CONTEXT).get_object()
    invoke_log_level = root.get(SCHEDULE_INVOKE_LOG_LEVEL).default_to(DEFAULT_INVOKE_LOG_LEVEL).as_string()

    time_zone_name = root.get(SCHEDULE_TIME_ZONE).as_string()
    time_zone = None if is_blank(time_zone_name) else parse_timezone(time_zone_name)
    times_tz = time_zone if time_zone is not None else settings.default_timezone
    start_time = parse_schedule_time(root.get(SCHEDULE_START_TIME), times_tz)
    end_time = parse_schedule_time(root.get(SCHEDULE_END_TIME), times_tz)

    schedule = ScheduleConfig(
        enabled=enabled,
        persisted=persisted,
        concurrent_execution=concurrent_execution,
        misfire_policy=misfire_policy,
        trigger_type=trigger_type,
        invoke_service=invoke_service,
        cron_schedule=cron_schedule,
        time_zone=time_zone,
        start_time=start_time,
        end_time=end_time,
        invoke_context=invoke_context,
        invoke_log_level=invoke_log_level,
        settings=settings,
    )
    logger.debug("Parsed %s schedule for %s.", schedule.schedule_type, invoke_service)
    return schedule


def load_schedule_file(
    path: Union[str, Path],
    settings: Optional[ScheduleSettings] = None,
) -> ScheduleConfig:
    """
    Read a JSON or YAML schedule file and validate it with parse_schedule().

    YAML 1.1 reads unquoted yes/no/on/off as native booleans, so
    `enabled: yes` is True here while the quoted string "yes" is False.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise ScheduleError(f"Error: Schedule file not found: {config_path}")

    # JSON is a subset of YAML, so one loader covers both formats.
    try:
        payload = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ValidationError(f"Error: Failed to parse {config_path}: {exc}") from exc

    if not isinstance(payload, dict):
        raise ValidationError(f"Error: Top-level schedule in {config_path} must be a mapping.")
    schedule = parse_schedule(payload, settings)
    logger.info("Loaded schedule %s from %s.", schedule.invoke_service, config_path)
    return schedule


def write_schedule_file(schedule: ScheduleConfig, path: Union[str, Path]) -> Path:
    config_path = Path(path)
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config = schedule.to_config()
    if config_path.suffix.lower() == ".json":
        text = json.dumps(config, indent=4) + "\n"
    else:
        text = yaml.safe_dump(config, sort_keys=False)
    config_path.write_text(text, encoding="utf-8")
    logger.info("Wrote schedule %s to %s.", schedule.invoke_service, config_path)
    return config_path

