"""Strict loader for the popfwd runtime configuration.

What:
  Locate, parse, override, and validate ``config.yml`` into a
  :class:`~popfwd.config.schema.RuntimeConfig`.

Why:
  Configuration lives outside the container image and carries credentials that
  operators prefer to inject through the environment. Centralising discovery,
  overrides, and validation means the rest of the pipeline can trust every
  field it receives.

How:
  Resolve candidate file locations from an explicit argument, the
  ``POPFWD_CONFIG_PATH`` environment variable, and the packaged default. Parse
  the YAML payload with ``yaml.safe_load``, apply ``POPFWD_*`` overrides to the
  raw mapping, validate it with Pydantic, and finally check for required values
  that may only be supplied through overrides.

Interfaces:
  - :func:`load_runtime_config`: Return a validated :class:`RuntimeConfig`.
  - :func:`apply_env_overrides`: Merge environment overrides into a raw mapping.
  - :class:`ConfigLoadError` / :class:`RuntimeConfigError`.

Invariants:
  - Empty environment variables never override configured values.
  - Every missing required field is reported in a single error so operators
    can fix the document in one pass.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

import yaml
from pydantic import ValidationError

from .schema import RuntimeConfig


class ConfigLoadError(Exception):
    """Base error for configuration parsing or validation failures.

    What:
      Represent fatal issues encountered while reading or validating the
      configuration document.

    Why:
      Grouping failures under a single type allows the CLI to report user
      mistakes separately from mailbox or delivery failures.
    """


class RuntimeConfigError(ConfigLoadError):
    """Error raised when ``config.yml`` cannot be located, parsed, or validated."""


_CONFIG_ENV = "POPFWD_CONFIG_PATH"
_DEFAULT_LOCATIONS: Tuple[Path, ...] = (Path("/etc/popfwd/config.yml"),)


def _candidate_paths(path: Optional[Path], environ: Mapping[str, str]) -> Iterable[Path]:
    """Yield configuration file locations in priority order.

    Accumulates deduplicated paths from the explicit argument, the
    ``POPFWD_CONFIG_PATH`` environment variable, and the default location,
    expanding ``~`` along the way.
    """

    seen: set[Path] = set()
    candidates = []
    if path is not None:
        candidates.append(path)
    env_path = environ.get(_CONFIG_ENV)
    if env_path:
        candidates.append(Path(env_path))
    candidates.extend(_DEFAULT_LOCATIONS)
    for candidate in candidates:
        candidate = candidate.expanduser()
        if candidate not in seen:
            seen.add(candidate)
            yield candidate


def _parse_config_payload(text: str, source: Path) -> Dict[str, Any]:
    """Parse ``config.yml`` text into a dictionary payload.

    Raises:
      RuntimeConfigError: If the file cannot be parsed or does not contain a
      mapping.
    """

    try:
        payload = yaml.safe_load(text) or {}
    except yaml.YAMLError as exc:
        raise RuntimeConfigError(f"Invalid YAML in {source}: {exc}") from exc
    if not isinstance(payload, dict):
        raise RuntimeConfigError(f"{source} must contain a mapping at the top-level")
    return payload


def apply_env_overrides(payload: Dict[str, Any], environ: Mapping[str, str]) -> Dict[str, Any]:
    """Merge ``POPFWD_*`` environment overrides into a raw configuration mapping.

    What:
      Replace destination credentials, the state path, the log level, and
      per-mailbox email/password values with non-empty environment variables.

    Why:
      Secrets are commonly injected by the container runtime rather than stored
      in the mounted YAML file.

    How:
      Shallow-copies the affected sections so the caller's mapping is left
      untouched, then writes each non-empty override into place. Mailbox
      overrides are indexed by position: ``POPFWD_MAILBOX_<i>_APP_PASSWORD``.

    Args:
      payload: Raw mapping produced by :func:`yaml.safe_load`.
      environ: Environment to read overrides from.

    Returns:
      A new mapping with overrides applied.
    """

    result = dict(payload)
    destination = dict(result.get("destination") or {})
    if environ.get("POPFWD_DEST_EMAIL"):
        destination["email"] = environ["POPFWD_DEST_EMAIL"]
    if environ.get("POPFWD_DEST_APP_PASSWORD"):
        destination["app_password"] = environ["POPFWD_DEST_APP_PASSWORD"]
    result["destination"] = destination
    if environ.get("POPFWD_STATE_PATH"):
        result["state_path"] = environ["POPFWD_STATE_PATH"]
    if environ.get("POPFWD_LOG_LEVEL"):
        result["log_level"] = environ["POPFWD_LOG_LEVEL"]

    mailboxes = result.get("mailboxes")
    if isinstance(mailboxes, list):
        updated = []
        for index, entry in enumerate(mailboxes):
            entry = dict(entry) if isinstance(entry, dict) else entry
            if isinstance(entry, dict):
                email = environ.get(f"POPFWD_MAILBOX_{index}_EMAIL")
                if email:
                    entry["email"] = email
                password = environ.get(f"POPFWD_MAILBOX_{index}_APP_PASSWORD")
                if password:
                    entry["app_password"] = password
            updated.append(entry)
        result["mailboxes"] = updated
    return result


def _load_runtime_from_path(path: Path, environ: Mapping[str, str]) -> RuntimeConfig:
    """Load, override, and validate ``config.yml`` from a specific path.

    Raises:
      RuntimeConfigError: If the file cannot be read, fails schema validation,
      or still lacks required values after overrides.
    """

    try:
        text = path.read_text()
    except FileNotFoundError as exc:
        raise RuntimeConfigError(f"Configuration file missing: {path}") from exc
    except OSError as exc:
        raise RuntimeConfigError(f"Unable to read configuration file {path}: {exc}") from exc
    payload = apply_env_overrides(_parse_config_payload(text, path), environ)
    try:
        config = RuntimeConfig.model_validate(payload)
    except ValidationError as exc:
        raise RuntimeConfigError(f"Invalid configuration in {path}: {exc}") from exc
    missing = config.missing_fields()
    if missing:
        details = "\n  - ".join(missing)
        raise RuntimeConfigError(f"missing required fields:\n  - {details}")
    return config


def load_runtime_config(
    path: Optional[Path | str] = None,
    *,
    environ: Optional[Mapping[str, str]] = None,
) -> RuntimeConfig:
    """Resolve, parse, and validate the runtime configuration.

    What:
      Locate ``config.yml`` using the precedence chain and return a validated
      :class:`RuntimeConfig`.

    How:
      An explicit ``path`` must exist; it never falls back to the other
      locations. Otherwise iterate through candidate paths until one exists,
      then delegate to :func:`_load_runtime_from_path`. ``environ`` defaults
      to :data:`os.environ`; tests pass an explicit mapping.

    Args:
      path: Optional explicit location of ``config.yml``.
      environ: Optional environment mapping used for overrides.

    Returns:
      The validated runtime configuration.

    Raises:
      RuntimeConfigError: If no configuration file can be located or validated.
    """

    env = os.environ if environ is None else environ
    requested_path = Path(path).expanduser() if path is not None else None
    if requested_path is not None and not requested_path.exists():
        raise RuntimeConfigError(f"Configuration file missing: {requested_path}")
    searched: list[str] = []
    for candidate in _candidate_paths(requested_path, env):
        if not candidate.exists():
            searched.append(str(candidate))
            continue
        return _load_runtime_from_path(candidate, env)

    listing = ", ".join(searched) if searched else "<none>"
    raise RuntimeConfigError(f"Unable to locate config.yml (searched: {listing})")
