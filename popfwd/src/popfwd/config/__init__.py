"""popfwd configuration package.

What:
  Provide a cohesive import surface for configuration loading and the Pydantic
  schema describing the destination account and source mailboxes.

Interfaces:
  - load_runtime_config / apply_env_overrides: Resolve ``config.yml``.
  - RuntimeConfig / DestinationSettings / MailboxAccount: Validated models.
  - ConfigLoadError / RuntimeConfigError: Error types raised by the loader.
"""

from .loader import ConfigLoadError, RuntimeConfigError, apply_env_overrides, load_runtime_config
from .schema import DestinationSettings, MailboxAccount, RuntimeConfig

__all__ = [
    "load_runtime_config",
    "apply_env_overrides",
    "ConfigLoadError",
    "RuntimeConfigError",
    "DestinationSettings",
    "MailboxAccount",
    "RuntimeConfig",
]
