"""Configuration model, TOML loading, environment overrides and validation."""

from __future__ import annotations

import dataclasses
import os
import re
import tomllib
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

ENV_PREFIX = "ITSJUSTINTV_"


class ConfigError(Exception):
    """Raised when configuration cannot be loaded, decoded or validated."""


@dataclass
class TLSConfig:
    enabled: bool = False
    domains: list[str] = field(default_factory=list)
    cert_dir: str = "data/acme_certs"


@dataclass
class ServerConfig:
    listen_addr: str = "0.0.0.0"
    port: int = 8080
    external_domain: str = ""
    tls: TLSConfig = field(default_factory=TLSConfig)


@dataclass
class TwitchConfig:
    client_id: str = ""
    client_secret: str = ""
    webhook_secret: str = ""
    token_file: str = "data/tokens.json"
    incoming_webhook_url: str = ""


@dataclass
class StreamerConfig:
    user_id: str = ""
    login: str = ""
    target_webhook_url: str = ""
    tag_filter: list[str] = field(default_factory=list)
    additional_tags: list[str] = field(default_factory=list)
    target_webhook_secret: str = ""
    target_webhook_header: str = ""
    target_webhook_hashing: str = ""


@dataclass
class RetryConfig:
    max_attempts: int = 3
    initial_delay: timedelta = timedelta(seconds=1)
    max_delay: timedelta = timedelta(minutes=5)
    backoff_factor: float = 2.0
    state_file: str = "data/retry_state.json"


@dataclass
class OutputConfig:
    enabled: bool = True
    file_path: str = "data/output.json"
    max_lines: int = 1000


@dataclass
class TelemetryConfig:
    enabled: bool = False
    endpoint: str = ""
    service_name: str = "itsjustintv"
    service_version: str = "0.3.0"


@dataclass
class GlobalWebhookConfig:
    """Fallback webhook used when a streamer has no target URL of its own."""

    enabled: bool = False
    url: str = ""
    target_webhook_secret: str = ""
    target_webhook_header: str = "X-Hub-Signature-256"
    target_webhook_hashing: str = "SHA-256"


@dataclass
class Config:
    server: ServerConfig = field(default_factory=ServerConfig)
    twitch: TwitchConfig = field(default_factory=TwitchConfig)
    streamers: dict[str, StreamerConfig] = field(default_factory=dict)
    retry: RetryConfig = field(default_factory=RetryConfig)
    output: OutputConfig = field(default_factory=OutputConfig)
    telemetry: TelemetryConfig = field(default_factory=TelemetryConfig)
    global_webhook: GlobalWebhookConfig = field(default_factory=GlobalWebhookConfig)
    _config_path: str = field(default="", init=False, repr=False, compare=False)

    @property
    def config_path(self) -> str:
        """Path of the file this configuration was loaded from, or ''."""
        return self._config_path

    def validate(self) -> None:
        """Validate this configuration, raising ConfigError on failure."""
        validate_config(self)


@runtime_checkable
class TwitchUserInfo(Protocol):
    """Basic user information needed to resolve a streamer's user ID."""

    def get_id(self) -> str:
        """Return the numeric user ID."""
        ...

    def get_login(self) -> str:
        """Return the login name."""
        ...


@runtime_checkable
class TwitchUserResolver(Protocol):
    """Looks up user information by login name."""

    def get_user_info_by_login_for_config(self, login: str) -> TwitchUserInfo:
        """Return user information for ``login`` or raise on failure."""
        ...


def default_config() -> Config:
    """Return a configuration filled with the defaults."""
    return Config()


_DURATION_UNITS = {
    "ns": 1,
    "us": 1_000,
    "µs": 1_000,
    "μs": 1_000,
    "ms": 1_000_000,
    "s": 1_000_000_000,
    "m": 60 * 1_000_000_000,
    "h": 3600 * 1_000_000_000,
}
_DURATION_PART = re.compile(r"(\d+\.?\d*|\.\d+)(ns|us|µs|μs|ms|s|m|h)")


def parse_duration(value: Any) -> timedelta:
    """Parse a duration such as "1h30m" or "300ms"; integers are nanoseconds."""
    if isinstance(value, timedelta):
        return value
    if isinstance(value, bool):
        raise ConfigError(f"invalid duration {value!r}")
    if isinstance(value, int):
        return timedelta(microseconds=value / 1000)
    if not isinstance(value, str):
        raise ConfigError(f"invalid duration {value!r}")

    text = value
    sign = 1
    if text and text[0] in "+-":
        sign = -1 if text[0] == "-" else 1
        text = text[1:]
    if text == "0":
        return timedelta(0)
    if not text:
        raise ConfigError(f'invalid duration "{value}"')

    total_ns = 0.0
    pos = 0
    while pos < len(text):
        match = _DURATION_PART.match(text, pos)
        if match is None:
            raise ConfigError(f'invalid duration "{value}"')
        total_ns += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    return timedelta(microseconds=sign * total_ns / 1000)


def _coerce(current: Any, value: Any, where: str) -> Any:
    if dataclasses.is_dataclass(current):
        if not isinstance(value, dict):
            raise ConfigError(f"{where}: expected a table")
        _apply(current, value, where)
        return current
    if isinstance(current, timedelta):
        return parse_duration(value)
    if isinstance(current, bool):
        if not isinstance(value, bool):
            raise ConfigError(f"{where}: expected a boolean")
        return value
    if isinstance(current, int):
        if isinstance(value, bool) or not isinstance(value, int):
            raise ConfigError(f"{where}: expected an integer")
        return value
    if isinstance(current, float):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ConfigError(f"{where}: expected a number")
        return float(value)
    if isinstance(current, str):
        if not isinstance(value, str):
            raise ConfigError(f"{where}: expected a string")
        return value
    if isinstance(current, list):
        if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
            raise ConfigError(f"{where}: expected an array of strings")
        return list(value)
    if isinstance(current, dict):
        if not isinstance(value, dict):
            raise ConfigError(f"{where}: expected a table")
        merged = dict(current)
        for name, table in value.items():
            merged[name] = _coerce(StreamerConfig(), table, f"{where}.{name}")
        return merged
    raise ConfigError(f"{where}: unsupported value")


def _apply(target: Any, data: dict[str, Any], where: str) -> None:
    names = {f.name for f in dataclasses.fields(target) if f.init}
    for key, value in data.items():
        if key not in names:
            continue
        path = f"{where}.{key}" if where else key
        setattr(target, key, _coerce(getattr(target, key), value, path))


def _apply_env_overrides(config: Config) -> None:
    if val := os.environ.get(ENV_PREFIX + "SERVER_LISTEN_ADDR"):
        config.server.listen_addr = val
    if val := os.environ.get(ENV_PREFIX + "SERVER_PORT"):
        match = re.match(r"\s*([+-]?\d+)", val)
        if match:
            config.server.port = int(match.group(1))
    if val := os.environ.get(ENV_PREFIX + "TWITCH_CLIENT_ID"):
        config.twitch.client_id = val
    if val := os.environ.get(ENV_PREFIX + "TWITCH_CLIENT_SECRET"):
        config.twitch.client_secret = val
    if val := os.environ.get(ENV_PREFIX + "TWITCH_WEBHOOK_SECRET"):
        config.twitch.webhook_secret = val
    if os.environ.get(ENV_PREFIX + "TLS_ENABLED") == "true":
        config.server.tls.enabled = True


def load_config(config_path: str | os.PathLike[str] | None) -> Config:
    """Load configuration from a TOML file, apply environment overrides and validate."""
    config = default_config()
    path_text = os.fspath(config_path) if config_path else ""

    if path_text:
        path = Path(path_text)
        try:
            path.stat()
        except FileNotFoundError:
            pass
        except OSError as err:
            raise ConfigError(f"failed to check config file {path_text}: {err}") from err
        else:
            try:
                with path.open("rb") as handle:
                    data = tomllib.load(handle)
                _apply(config, data, "")
            except (OSError, tomllib.TOMLDecodeError, ConfigError) as err:
                raise ConfigError(
                    f"failed to decode config file {path_text}: {err}"
                ) from err

    _apply_env_overrides(config)

    try:
        validate_config(config)
    except ConfigError as err:
        raise ConfigError(f"configuration validation failed: {err}") from err

    config._config_path = path_text
    return config


def is_valid_url(url: str) -> bool:
    """Return True for a non-trivial http:// or https:// URL."""
    if not url:
        return False
    return len(url) > 7 and (url[:7] == "http://" or url[:8] == "https://")


def validate_config(config: Config) -> None:
    """Check required fields and consistency, and create the data directories."""
    if not config.twitch.client_id:
        raise ConfigError("twitch.client_id is required")
    if not config.twitch.client_secret:
        raise ConfigError("twitch.client_secret is required")
    if not config.twitch.webhook_secret:
        raise ConfigError("twitch.webhook_secret is required")

    if config.server.port <= 0 or config.server.port > 65535:
        raise ConfigError("server.port must be between 1 and 65535")

    if config.server.tls.enabled and not config.server.tls.domains:
        raise ConfigError("server.tls.domains is required when TLS is enabled")

    if config.retry.max_attempts <= 0:
        raise ConfigError("retry.max_attempts must be greater than 0")
    if config.retry.backoff_factor <= 1.0:
        raise ConfigError("retry.backoff_factor must be greater than 1.0")

    if config.global_webhook.enabled:
        if not config.global_webhook.url:
            raise ConfigError(
                "global_webhook.url is required when global_webhook.enabled is true"
            )
        if not is_valid_url(config.global_webhook.url):
            raise ConfigError("global_webhook.url must be a valid URL")

    data_dirs = [
        os.path.dirname(config.twitch.token_file) or ".",
        os.path.dirname(config.retry.state_file) or ".",
        os.path.dirname(config.output.file_path) or ".",
        config.server.tls.cert_dir,
        "data/image_cache",
    ]
    for directory in data_dirs:
        try:
            os.makedirs(directory, mode=0o755, exist_ok=True)
        except OSError as err:
            raise ConfigError(f"failed to create data directory {directory}: {err}") from err


def resolve_streamer_user_ids(config: Config, resolver: TwitchUserResolver) -> None:
    """Fill in missing streamer user IDs by looking up their logins."""
    for key, streamer in list(config.streamers.items()):
        if streamer.user_id or not streamer.login:
            continue
        try:
            info = resolver.get_user_info_by_login_for_config(streamer.login)
        except Exception as err:
            raise ConfigError(
                f"failed to resolve user ID for streamer '{key}' "
                f"with login '{streamer.login}': {err}"
            ) from err
        user_id = info.get_id()
        config.streamers[key] = dataclasses.replace(streamer, user_id=user_id)
        print(
            f"Resolved user ID for streamer '{key}': "
            f"login='{streamer.login}' -> user_id='{user_id}'"
        )