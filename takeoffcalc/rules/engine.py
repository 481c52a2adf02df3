"""Materials rule engine: match rules to features and derive a priced BOM."""

from __future__ import annotations

import base64
import json
import logging
from collections.abc import Iterable, Mapping, Sequence
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

import yaml
from pydantic import ValidationError

from takeoffcalc.errors import QuantityExpressionError, RuleSetValidationError
from takeoffcalc.models import (
    Feature,
    Material,
    MaterialPricing,
    MaterialSources,
    RuleSet,
    RuleUnits,
)
from takeoffcalc.rules.defaults import PRICE_TABLE
from takeoffcalc.rules.expression import evaluate

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")


def _load_payload(raw: str | bytes) -> Any:
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    try:
        return yaml.safe_load(raw)
    except yaml.YAMLError:
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            raise RuleSetValidationError("Rules must be valid YAML or JSON") from exc


def _describe(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(p) for p in error["loc"])
        parts.append(f"{location}: {error['msg']}" if location else error["msg"])
    return "; ".join(parts)


def parse_rule_set(raw: str | bytes | Mapping[str, Any]) -> RuleSet:
    """Parse and validate a YAML/JSON rule set payload.

    Raises:
        RuleSetValidationError: If the payload is not YAML/JSON or misses
            version, units, rules, a rule's when/materials, or a material's
            sku/qty.
    """
    payload = dict(raw) if isinstance(raw, Mapping) else _load_payload(raw)
    if not isinstance(payload, dict):
        raise RuleSetValidationError("Rule set payload is invalid")
    if not payload.get("version") or not payload.get("units") or not isinstance(payload.get("rules"), list):
        raise RuleSetValidationError("Rule set must include version, units, and rules[]")
    for rule in payload["rules"]:
        if not isinstance(rule, dict) or not isinstance(rule.get("when"), dict) or not isinstance(
            rule.get("materials"), list
        ):
            raise RuleSetValidationError('Each rule must include "when" and materials[]')
        for material in rule["materials"]:
            if not isinstance(material, dict) or not material.get("sku") or material.get("qty") in (None, ""):
                raise RuleSetValidationError("Each material entry requires sku and qty")

    try:
        return RuleSet.model_validate(payload)
    except ValidationError as exc:
        raise RuleSetValidationError(f"Rule set is invalid: {_describe(exc)}") from exc


def rule_fingerprint(when: Mapping[str, Any]) -> str:
    """Short traceability id for a rule condition (not unique)."""
    encoded = json.dumps(dict(when), separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    return base64.b64encode(encoded).decode("ascii")[:8]


def default_uom(expression: str, units: RuleUnits) -> str:
    if "area" in expression:
        return units.area or "ft2"
    if "length" in expression:
        return units.linear or "ft"
    if "volume" in expression:
        return units.volume or "ft3"
    return "ea"


class MaterialsRuleEngine:
    """Evaluates a rule set against features into consolidated materials."""

    def __init__(self, price_table: Mapping[str, Decimal | float] | None = None, currency: str = "USD"):
        table = PRICE_TABLE if price_table is None else price_table
        self.price_table = {sku: Decimal(str(price)) for sku, price in table.items()}
        self.currency = currency

    # --- matching ------------------------------------------------------------

    def matches(self, when: Mapping[str, Any], feature: Feature) -> bool:
        """True when every condition key matches the feature (equality only)."""
        for key, expected in when.items():
            if key == "feature":
                if not feature.type or feature.type.lower() != str(expected).lower():
                    return False
                continue
            if feature.lookup(key) != expected:
                return False
        return True

    # --- quantities ----------------------------------------------------------

    def build_context(self, rule_set: RuleSet, feature: Feature) -> dict[str, float]:
        """Variables visible to quantity expressions; later sources override earlier."""
        context = rule_set.numeric_vars()
        for key in ("length", "area", "count"):
            value = feature.lookup(key)
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                context[key] = float(value)
        context.update(feature.numeric_props())
        return context

    def evaluate_quantity(self, expression: str, feature: Feature, rule_set: RuleSet) -> float:
        try:
            return evaluate(expression, self.build_context(rule_set, feature))
        except QuantityExpressionError as exc:
            raise QuantityExpressionError(
                f"Feature {feature.id} ({feature.type}): {exc}", expression
            ) from exc

    # --- pricing -------------------------------------------------------------

    def lookup_pricing(self, sku: str, qty: float) -> MaterialPricing | None:
        unit_price = self.price_table.get(sku)
        if unit_price is None:
            return None
        return MaterialPricing(
            unit_price=unit_price,
            total_price=(unit_price * Decimal(str(qty))).quantize(CENTS, rounding=ROUND_HALF_UP),
            currency=self.currency,
        )

    # --- generation ----------------------------------------------------------

    def generate_materials(self, features: Iterable[Feature], rule_set: RuleSet) -> list[Material]:
        """Materials for all features, consolidated by SKU in first-seen order.

        Raises:
            QuantityExpressionError: If any matched quantity expression is invalid.
        """
        rows: list[Material] = []
        for feature in features:
            for rule in rule_set.rules:
                if not self.matches(rule.when, feature):
                    continue
                rule_id = rule_fingerprint(rule.when)
                for definition in rule.materials:
                    qty = self.evaluate_quantity(definition.qty, feature, rule_set)
                    if qty <= 0:
                        continue
                    rows.append(
                        Material(
                            sku=definition.sku,
                            qty=qty,
                            uom=definition.uom or default_uom(definition.qty, rule_set.units),
                            description=definition.description,
                            rule_id=rule_id,
                            sources=MaterialSources(features=[str(feature.id)], rule=definition.sku),
                            pricing=self.lookup_pricing(definition.sku, qty),
                        )
                    )
        return self.consolidate(rows)

    def consolidate(self, items: Sequence[Material]) -> list[Material]:
        merged: dict[str, Material] = {}
        for item in items:
            existing = merged.get(item.sku)
            if existing is None:
                merged[item.sku] = item.model_copy(deep=True)
                continue
            existing.qty += item.qty
            existing.sources.features.extend(item.sources.features)
            if existing.pricing is not None and item.pricing is not None:
                existing.pricing.total_price = (existing.pricing.total_price or Decimal(0)) + (
                    item.pricing.total_price or Decimal(0)
                )
        return list(merged.values())

    async def apply_rules(
        self,
        repository: Any,
        job_id: str,
        rule_set: RuleSet,
        features: Sequence[Feature] | None = None,
    ) -> list[Material]:
        """Regenerate a job's materials and replace whatever was stored before."""
        if features is None:
            features = await repository.list_features(job_id)
        materials = self.generate_materials(features, rule_set)
        await repository.replace_materials(job_id, materials)
        logger.info(f"Applied rules to job {job_id}: {len(materials)} materials generated")
        return materials
