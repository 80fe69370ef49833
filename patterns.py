"""Centralized regex patterns for P6/EBS sync."""

import re


class Patterns:
    """Regex patterns used throughout the sync process."""

    # Entity id as typed on the command line: EBS1001, T1001, PRJ-7.2
    ENTITY_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.\-]*$")

    # Runs of whitespace inside ids and names
    WHITESPACE = re.compile(r"\s+")

    # Trailing UTC designator on ISO timestamps: 2025-05-01T08:00:00Z
    UTC_SUFFIX = re.compile(r"Z$")
