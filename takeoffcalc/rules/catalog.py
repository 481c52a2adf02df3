"""Stored rule set lookup and seeding of the bundled defaults."""

from __future__ import annotations

import logging

from takeoffcalc.db.repository import TakeoffRepository
from takeoffcalc.models import RuleSet
from takeoffcalc.rules.defaults import DEFAULT_RULE_SETS, DEFAULT_VERSION, STANDARD_COMMERCIAL_NAME
from takeoffcalc.rules.engine import parse_rule_set

logger = logging.getLogger(__name__)


async def seed_default_rule_sets(repository: TakeoffRepository) -> dict[str, str]:
    """Store every bundled rule set that is not stored yet.

    Returns:
        Rule set name -> stored id, for seeded and existing sets alike
    """
    ids: dict[str, str] = {}
    for name, payload in DEFAULT_RULE_SETS.items():
        existing = await repository.find_rule_set(name, DEFAULT_VERSION)
        if existing is not None:
            ids[name] = existing
            continue
        ids[name] = await repository.save_rule_set(name, DEFAULT_VERSION, parse_rule_set(payload))
        logger.info(f"Seeded rule set {name}")
    return ids


async def resolve_rule_set(repository: TakeoffRepository, rule_set_id: str | None) -> RuleSet:
    """The job's rule set, or the standard commercial set when it names none.

    Raises:
        RuleSetNotFoundError: If ``rule_set_id`` is given but not stored
    """
    if rule_set_id:
        return await repository.get_rule_set(rule_set_id)
    ids = await seed_default_rule_sets(repository)
    return await repository.get_rule_set(ids[STANDARD_COMMERCIAL_NAME])
