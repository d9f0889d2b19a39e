"""Optional ``selectors.json`` overrides for the selectors ``SeleniumPage`` uses.

Example::

    {
      "slot_controls": ["div[role='button'][class*='time']"],
      "confirm_button": [{"by": "xpath", "value": "//div[@role='dialog']//button[2]"}]
    }

Plain strings are CSS selectors. Overrides are tried before the built-in
selectors of the same group.
"""

import json
import logging
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from selenium.webdriver.common.by import By

Selector = Tuple[str, str]

BY_MAP = {
    "ID": By.ID,
    "NAME": By.NAME,
    "XPATH": By.XPATH,
    "CSS_SELECTOR": By.CSS_SELECTOR,
    "CLASS_NAME": By.CLASS_NAME,
}

REGISTRY_ALIASES = {
    "slot_controls": "SLOT_CONTROL_SELECTORS",
    "buttons": "BUTTON_SELECTORS",
    "confirm_button": "CONFIRM_SELECTORS",
}

# Slot controls are collected by querySelectorAll inside the snapshot script.
CSS_ONLY_GROUPS = {"SLOT_CONTROL_SELECTORS"}

_DEFAULTS_ATTR = "_selector_defaults"


def _parse_selector(item) -> Optional[Selector]:
    if isinstance(item, str):
        value = item.strip()
        return (By.CSS_SELECTOR, value) if value else None
    if not isinstance(item, dict):
        return None
    by_name = str(item.get("by", "css_selector")).upper().strip()
    value = str(item.get("value", "")).strip()
    if by_name not in BY_MAP or not value:
        return None
    return BY_MAP[by_name], value


def load_selector_registry(path: str = "selectors.json") -> Dict[str, List[Selector]]:
    registry_path = Path(path)
    if not registry_path.exists():
        return {}
    try:
        raw = json.loads(registry_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        logging.warning("Ignoring selector file %s: %s", registry_path, exc)
        return {}
    if not isinstance(raw, dict):
        logging.warning("Ignoring selector file %s: top level must be an object", registry_path)
        return {}

    registry: Dict[str, List[Selector]] = {}
    for key, items in raw.items():
        group = REGISTRY_ALIASES.get(str(key).strip(), str(key).strip())
        if not isinstance(items, list):
            logging.warning("Selector group %s in %s is not a list, skipped", key, registry_path)
            continue
        selectors: List[Selector] = []
        for item in items:
            selector = _parse_selector(item)
            if selector is None:
                logging.warning("Unusable selector %r in group %s", item, key)
                continue
            if group in CSS_ONLY_GROUPS and selector[0] != By.CSS_SELECTOR:
                logging.warning("Group %s accepts CSS selectors only, dropping %s=%s", key, *selector)
                continue
            selectors.append(selector)
        if selectors:
            registry[group] = selectors
    return registry


def apply_selector_overrides(target_cls, path: str = "selectors.json") -> Dict[str, int]:
    """Put overrides from ``path`` in front of the defaults on ``target_cls``.

    Built-in defaults are kept aside on first use so applying twice does not
    stack overrides. Returns the number of overrides applied per group.
    """
    defaults = target_cls.__dict__.get(_DEFAULTS_ATTR)
    if defaults is None:
        defaults = {}
        setattr(target_cls, _DEFAULTS_ATTR, defaults)

    applied: Dict[str, int] = {}
    for group, overrides in load_selector_registry(path).items():
        if not hasattr(target_cls, group):
            logging.warning("Unknown selector group %s in %s", group, path)
            continue
        base = defaults.setdefault(group, list(getattr(target_cls, group)))
        merged = list(overrides) + [selector for selector in base if selector not in overrides]
        setattr(target_cls, group, merged)
        applied[group] = len(overrides)
        logging.info("%s: %d selector override(s) ahead of %d default(s)", group, len(overrides), len(base))
    return applied
