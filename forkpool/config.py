"""Pool configuration loader for YAML files."""

import os
import re
from pathlib import Path
from typing import Any

import yaml

from .types import PoolConfig

_ENV_PATTERN = re.compile(r"\$\{([^:}]+)(:-([^}]*))?\}")


def _expand_env_var(value: str) -> Any:
    """Expand ${VAR} and ${VAR:-default} and convert to appropriate type."""

    def replacer(match):
        var_name = match.group(1)
        default_val = match.group(3) if match.group(3) is not None else ""
        return os.environ.get(var_name, default_val)

    result = _ENV_PATTERN.sub(replacer, value)
    if result == "":
        return None
    if result.isdigit():
        return int(result)
    if result.lower() in ("true", "false"):
        return result.lower() == "true"
    return result


def _expand_vars(obj: Any) -> Any:
    """Recursively expand environment variables."""
    if isinstance(obj, dict):
        return {k: _expand_vars(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_expand_vars(item) for item in obj]
    if isinstance(obj, str) and "${" in obj:
        return _expand_env_var(obj)
    return obj


def load_pool_config(path: Path | str, name: str | None = None) -> PoolConfig:
    """Load a pool configuration from YAML.

    The file holds named pools:

        pools:
          crawler:
            concurrency: ${CRAWLER_CONCURRENCY:-8}
            timeout: 30

    Args:
        path: YAML file to read
        name: Pool to load. Defaults to the only pool in the file.

    Returns:
        The validated configuration, named after its key

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: If the pool is unknown or no name was given for a file with several pools
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with path.open() as f:
        content = yaml.safe_load(f) or {}

    pools = content.get("pools") or {}
    if name is None:
        if len(pools) != 1:
            raise ValueError(f"{path} defines {len(pools)} pools, pass the name of the one to load")
        name = next(iter(pools))
    if name not in pools:
        raise ValueError(f"Unknown pool: {name}")

    settings = _expand_vars(pools[name] or {})
    settings.setdefault("name", name)
    return PoolConfig(**settings)
