"""Find the target-system counterpart of a source entity."""

import logging
from dataclasses import dataclass
from typing import Callable, Iterable

from clients import ApiError, ConnectivityError
from mapping import normalize_id
from models import Resolution

logger = logging.getLogger(__name__)

Candidates = Iterable[dict] | Callable[[], Iterable[dict]]


@dataclass(frozen=True)
class MatchRule:
    """Which fields identify an entity on each side.

    Keys are tuples so composite identities such as
    (resourceId, activityId) resolve the same way as single ids.
    """

    source_key: tuple[str, ...]
    target_key: tuple[str, ...]
    handle_field: str | None = "ObjectId"  # None: the key itself is the handle
    source_name: str | None = None
    target_name: str | None = None
    external_id_field: str | None = None


# EBS project -> P6 project
PROJECT_RULE = MatchRule(("PROJECT_ID",), ("Id",), "ObjectId", "NAME", "Name")
# EBS task -> P6 WBS node
WBS_RULE = MatchRule(("TASK_ID",), ("Id",), "ObjectId", "TASK_NAME", "Name")
# P6 WBS node -> EBS task
TASK_RULE = MatchRule(("Id",), ("TASK_ID",), "TASK_ID", "Name", "TASK_NAME")
# P6 resource assignment -> EBS resource assignment
ASSIGNMENT_RULE = MatchRule(("ResourceId", "ActivityId"), ("resourceId", "activityId"), None)


class EntityResolver:
    """Resolve source records against a pool of target candidates.

    Strategies, first hit wins:
        1. external id: target[external_id_field] == source key
        2. natural id:  target key == source key
        3. name (only with allow_fuzzy): exact, then substring overlap

    The name fallback is lossy and logs a warning whenever it decides.
    Failing to fetch candidates counts as "not found", except for
    connectivity errors which propagate to the caller.
    """

    def __init__(
        self,
        rule: MatchRule,
        allow_fuzzy: bool = False,
        aliases: dict[str, str] | None = None,
    ):
        self.rule = rule
        self.allow_fuzzy = allow_fuzzy
        self.aliases = aliases or {}

    def with_external_id(self, field: str | None) -> "EntityResolver":
        """Copy of this resolver that also tries an external-id field."""
        rule = MatchRule(
            self.rule.source_key,
            self.rule.target_key,
            self.rule.handle_field,
            self.rule.source_name,
            self.rule.target_name,
            field,
        )
        return EntityResolver(rule, self.allow_fuzzy, self.aliases)

    def resolve(self, source: dict, candidates: Candidates) -> Resolution:
        pool = self._fetch(source, candidates)
        if pool is None:
            return Resolution.not_found()

        key = self._key(source, self.rule.source_key)

        if self.rule.external_id_field and key[0] is not None and len(key) == 1:
            for candidate in pool:
                if normalize_id(candidate.get(self.rule.external_id_field), self.aliases) == key[0]:
                    return self._hit(candidate, "external_id")

        if all(part is not None for part in key):
            for candidate in pool:
                if self._key(candidate, self.rule.target_key) == key:
                    return self._hit(candidate, "natural_id")

        if self.allow_fuzzy and self.rule.source_name and self.rule.target_name:
            return self._by_name(source, pool)

        return Resolution.not_found()

    def _fetch(self, source: dict, candidates: Candidates) -> list[dict] | None:
        try:
            return list(candidates() if callable(candidates) else candidates)
        except ConnectivityError:
            raise
        except ApiError as e:
            logger.warning(f"Could not look up {self._label(source)} in target, treating as not found: {e}")
            return None

    def _by_name(self, source: dict, pool: list[dict]) -> Resolution:
        name = _clean_name(source.get(self.rule.source_name))
        if not name:
            return Resolution.not_found()

        named = [(c, _clean_name(c.get(self.rule.target_name))) for c in pool]
        exact = [c for c, other in named if other == name]
        overlap = [c for c, other in named if other and (name in other or other in name)]

        for strategy, matches in (("exact name", exact), ("name overlap", overlap)):
            if len(matches) == 1:
                logger.warning(
                    f"Resolved {self._label(source)} by {strategy} to "
                    f"'{matches[0].get(self.rule.target_name)}'; verify this match"
                )
                return self._hit(matches[0], "name")
            if len(matches) > 1:
                logger.warning(
                    f"Ambiguous {strategy} for {self._label(source)}: "
                    f"{len(matches)} candidates, treating as not found"
                )
                return Resolution.not_found()

        logger.warning(f"No name match for {self._label(source)}, treating as not found")
        return Resolution.not_found()

    def _hit(self, candidate: dict, strategy: str) -> Resolution:
        if self.rule.handle_field:
            target_id = candidate.get(self.rule.handle_field)
            target_id = str(target_id) if target_id is not None else None
        else:
            target_id = "/".join(str(part) for part in self._key(candidate, self.rule.target_key))
        return Resolution(found=True, target_id=target_id, snapshot=candidate, strategy=strategy)

    def _key(self, record: dict, fields: tuple[str, ...]) -> tuple[str | None, ...]:
        return tuple(normalize_id(record.get(f), self.aliases) for f in fields)

    def _label(self, source: dict) -> str:
        return "/".join(str(source.get(f)) for f in self.rule.source_key)


def _clean_name(value) -> str:
    return " ".join(str(value).split()).casefold() if value else ""
