"""
Contact name table.

Maps participant identifiers (phone numbers, emails) to human names. The
table is built once at startup from a JSON export and never refreshed.
"""

import json
import logging
from pathlib import Path
from typing import Dict, Optional

logger = logging.getLogger(__name__)


def normalize_identifier(identifier: str, prefix: str = "+1") -> str:
    """Strip the country-code prefix so stored and contact numbers line up."""
    if prefix:
        return identifier.replace(prefix, "")
    return identifier


def load_contacts(path: Optional[str], prefix: str = "+1") -> Dict[str, str]:
    """
    Load the identifier -> name table from a JSON object file.

    A missing or malformed file yields an empty table; names then fall back
    to raw identifiers.
    """
    if not path:
        logger.info("No contacts file configured, names will not be resolved")
        return {}

    contacts_file = Path(path).expanduser()
    try:
        raw = json.loads(contacts_file.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.error(f"Unable to read contacts from {contacts_file}: {e}")
        return {}

    if not isinstance(raw, dict):
        logger.error(f"Contacts file {contacts_file} is not a JSON object")
        return {}

    contacts = {
        normalize_identifier(str(identifier), prefix): str(name)
        for identifier, name in raw.items()
    }
    logger.info(f"Loaded {len(contacts)} contacts")
    return contacts
