"""
Credit Calculator

Calculates the credit cost of priced AI-generation actions.
Supports:
- Duration-based pricing (voice agent sessions)
- Structure-based pricing (courses: chapters x lessons)
- Tiered pricing (presentations by slide count)

Costs are whole credits and never fall below the rule's minimum.
"""

import logging
import math
from typing import Any, Dict, List, Mapping, Optional

from backend.src.billing.shared.config import PricingRule, get_pricing_rule, get_priced_kinds
from backend.src.billing.shared.exceptions import InvalidActionParametersError

logger = logging.getLogger(__name__)


class CreditCalculator:
    """
    Calculate credit costs for priced actions.

    ``calculate`` is pure and deterministic over validated parameters;
    ``validate`` is the single place where caller input is rejected.

    Usage:
        calculator = CreditCalculator()
        cost = calculator.calculate('voice_agent', {'duration': 15})  # 4
    """

    def __init__(self, rules: Optional[Mapping[str, PricingRule]] = None):
        """
        Initialize the calculator.

        Args:
            rules: Optional pricing rules keyed by kind; defaults to the
                configured rules
        """
        self._rules = dict(rules) if rules is not None else None

    def get_rule(self, kind: str) -> Optional[PricingRule]:
        if self._rules is not None:
            return self._rules.get(kind)
        return get_pricing_rule(kind)

    def supported_kinds(self) -> List[str]:
        if self._rules is not None:
            return list(self._rules.keys())
        return get_priced_kinds()

    # =========================================================================
    # VALIDATION
    # =========================================================================

    def validate(self, kind: str, parameters: Optional[Mapping[str, Any]]) -> Dict[str, int]:
        """
        Validate action parameters against the pricing rule.

        Args:
            kind: Action kind (e.g., 'course')
            parameters: Raw parameters supplied by the caller

        Returns:
            The validated parameters as integers

        Raises:
            InvalidActionParametersError: Unknown kind, missing, non-integer
                or out-of-range parameters. All violations are reported.
        """
        rule = self.get_rule(kind)
        if rule is None:
            raise InvalidActionParametersError(
                message=f"Unknown action kind '{kind}'",
                errors=[f"kind must be one of: {', '.join(sorted(self.supported_kinds()))}"],
                kind=kind,
            )

        parameters = parameters or {}
        errors = []
        cleaned: Dict[str, int] = {}

        for param in rule.parameters:
            value = parameters.get(param.name)
            if value is None:
                errors.append(f"{param.name} is required")
                continue
            # bool is an int subclass
            if isinstance(value, bool) or not isinstance(value, int):
                errors.append(f"{param.name} must be an integer")
                continue
            if value < param.minimum or value > param.maximum:
                errors.append(f"{param.name} must be between {param.minimum} and {param.maximum}")
                continue
            cleaned[param.name] = value

        if errors:
            raise InvalidActionParametersError(
                message=f"Invalid parameters for {rule.display_name.lower()}: {'; '.join(errors)}",
                errors=errors,
                kind=kind,
            )

        return cleaned

    # =========================================================================
    # PRICING
    # =========================================================================

    def calculate(self, kind: str, parameters: Mapping[str, Any]) -> int:
        """
        Calculate the credit cost of an action.

        Args:
            kind: Action kind
            parameters: Parameters already accepted by ``validate``

        Returns:
            Cost in credits, never below the rule's minimum
        """
        return self.breakdown(kind, parameters)['total']

    def breakdown(self, kind: str, parameters: Mapping[str, Any]) -> Dict[str, int]:
        """
        Cost components for previews.

        Returns:
            Dict with base_cost, variable_cost, minimum_cost and total
        """
        rule = self.get_rule(kind)
        if rule is None:
            raise InvalidActionParametersError(message=f"Unknown action kind '{kind}'", kind=kind)

        if rule.formula == 'duration':
            base = rule.base_cost
            variable = math.ceil(parameters['duration'] / rule.unit)
        elif rule.formula == 'structure':
            chapters = parameters['chapters']
            base = 0
            variable = chapters * parameters['lessons_per_chapter'] + chapters
        elif rule.formula == 'tiered':
            base = 0
            variable = self._tier_cost(rule, parameters['slides'])
        else:
            raise ValueError(f"Unsupported pricing formula '{rule.formula}'")

        total = max(base + variable, rule.minimum_cost)
        return {
            'base_cost': base,
            'variable_cost': variable,
            'minimum_cost': rule.minimum_cost,
            'total': total,
        }

    @staticmethod
    def _tier_cost(rule: PricingRule, count: int) -> int:
        for upper_bound, cost in rule.tiers:
            if count <= upper_bound:
                return cost
        return rule.overflow_cost

    def price(self, kind: str, parameters: Optional[Mapping[str, Any]]) -> int:
        """Validate then calculate; the entry point for untrusted input."""
        cleaned = self.validate(kind, parameters)
        cost = self.calculate(kind, cleaned)
        logger.debug(f"[CREDITS] Priced {kind} {cleaned} at {cost} credits")
        return cost


# Global calculator instance
credit_calculator = CreditCalculator()


# Convenience functions
def calculate_action_cost(kind: str, parameters: Mapping[str, Any]) -> int:
    """Calculate the cost of a priced action using the global calculator."""
    return credit_calculator.price(kind, parameters)


def estimate_cost(kind: str, parameters: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Validated cost preview with breakdown.

    Returns:
        Dict with kind, parameters, credit_cost and breakdown
    """
    cleaned = credit_calculator.validate(kind, parameters)
    breakdown = credit_calculator.breakdown(kind, cleaned)
    return {
        'kind': kind,
        'parameters': cleaned,
        'credit_cost': breakdown['total'],
        'breakdown': breakdown,
    }
