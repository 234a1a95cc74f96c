"""Configuration file support for the varhunter scanner.

Loads .varhunter.yml from the project root (or specified path) and provides
the unused-name pattern, extra pass-by-reference functions, path exclusions,
and suppression settings.

Config format example:

    ignore_unused_pattern: "^_"

    by_reference_functions:
      my_fill: [1, 2]
      my_bind: ["...2"]

    treat_visibility_as_used: true

    exclude_paths:
      - "vendor/"
      - "**/*.tpl.php"

    suppression_keyword: "varhunter:ignore"
    min_severity: "WARNING"
"""

import fnmatch
import os
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Union

import yaml

from php_varscan import AnalyzerConfig

CONFIG_NAMES = ('.varhunter.yml', '.varhunter.yaml')
SEVERITY_NAMES = ('WARNING', 'ERROR')
SPREAD_SLOT_RE = re.compile(r'^\.\.\.\d+$')


class ConfigError(ValueError):
    """The configuration file is malformed."""


@dataclass
class VarhunterConfig:
    """Parsed configuration from .varhunter.yml."""
    ignore_unused_pattern: Optional[str] = None
    by_reference_functions: Dict[str, List[Union[int, str]]] = field(default_factory=dict)
    treat_visibility_as_used: bool = True
    exclude_paths: List[str] = field(default_factory=list)
    suppression_keyword: str = "varhunter:ignore"
    min_severity: str = "WARNING"

    def should_exclude(self, file_path: str) -> bool:
        """Check if a file path matches any exclusion pattern."""
        for pattern in self.exclude_paths:
            if fnmatch.fnmatch(file_path, pattern):
                return True
            # Also check if any path component matches
            if pattern.endswith('/') and pattern.rstrip('/') in file_path.split(os.sep):
                return True
        return False

    def to_analyzer_config(self) -> AnalyzerConfig:
        return AnalyzerConfig(
            ignore_unused_names=self.ignore_unused_pattern,
            treat_visibility_as_used=self.treat_visibility_as_used,
            by_reference_functions=dict(self.by_reference_functions),
        )


def load_config(target_path: str, config_path: str = None) -> Optional[VarhunterConfig]:
    """Load varhunter configuration.

    Args:
        target_path: The scan target path (used to find .varhunter.yml)
        config_path: Explicit config path (overrides auto-discovery)

    Returns:
        VarhunterConfig if found, None otherwise.
    """
    if config_path:
        if os.path.isfile(config_path):
            return _parse_config(config_path)
        return None

    # Walk up from target_path to find .varhunter.yml
    search_dir = os.path.abspath(target_path)
    if os.path.isfile(search_dir):
        search_dir = os.path.dirname(search_dir)

    while True:
        for name in CONFIG_NAMES:
            candidate = os.path.join(search_dir, name)
            if os.path.isfile(candidate):
                return _parse_config(candidate)
        parent = os.path.dirname(search_dir)
        if parent == search_dir:
            break  # Reached filesystem root
        search_dir = parent

    return None


def _parse_slots(function: str, items) -> List[Union[int, str]]:
    if not isinstance(items, list):
        items = [items]
    slots: List[Union[int, str]] = []
    for item in items:
        if isinstance(item, bool):
            raise ConfigError(f"by_reference_functions.{function}: invalid slot {item!r}")
        if isinstance(item, int) and item > 0:
            slots.append(item)
        elif isinstance(item, str) and item.isdigit() and int(item) > 0:
            slots.append(int(item))
        elif isinstance(item, str) and SPREAD_SLOT_RE.match(item):
            slots.append(item)
        else:
            raise ConfigError(f"by_reference_functions.{function}: invalid slot {item!r}")
    return slots


def _parse_config(config_path: str) -> VarhunterConfig:
    """Parse a .varhunter.yml file into a VarhunterConfig."""
    with open(config_path, 'r') as f:
        try:
            data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"{config_path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"{config_path}: top level must be a mapping")

    config = VarhunterConfig()

    # Parse ignore pattern
    pattern = data.get('ignore_unused_pattern')
    if pattern:
        try:
            re.compile(str(pattern))
        except re.error as e:
            raise ConfigError(f"ignore_unused_pattern: {e}") from e
        config.ignore_unused_pattern = str(pattern)

    # Parse by-reference functions
    by_ref = data.get('by_reference_functions', {})
    if isinstance(by_ref, dict):
        for function, items in by_ref.items():
            config.by_reference_functions[str(function).lower()] = _parse_slots(str(function), items)

    # Parse exclude_paths
    exclude = data.get('exclude_paths', [])
    if isinstance(exclude, list):
        config.exclude_paths = [str(p) for p in exclude]

    # Parse simple settings
    config.treat_visibility_as_used = bool(data.get('treat_visibility_as_used', True))
    config.suppression_keyword = str(data.get('suppression_keyword', 'varhunter:ignore'))
    min_severity = str(data.get('min_severity', 'WARNING')).upper()
    if min_severity not in SEVERITY_NAMES:
        raise ConfigError(f"min_severity must be one of {', '.join(SEVERITY_NAMES)}")
    config.min_severity = min_severity

    return config
