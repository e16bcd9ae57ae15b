"""
Billing Configuration

This module defines the pricing rules for credit-priced actions and the
ledger constants shared by the billing module.

Usage:
    from backend.src.billing.shared.config import PRICING_RULES, get_pricing_rule

    rule = get_pricing_rule('voice_agent')
    print(rule.minimum_cost)  # 3
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from backend.core.conf import settings


# =============================================================================
# LEDGER CONSTANTS
# =============================================================================
# Transaction kinds as stored in credit_transactions.kind
KIND_PURCHASE: str = "purchase"
KIND_CONSUMPTION: str = "consumption"
KIND_ADJUSTMENT: str = "adjustment"
KIND_REFUND: str = "refund"

TRANSACTION_KINDS: Tuple[str, ...] = (KIND_PURCHASE, KIND_CONSUMPTION, KIND_ADJUSTMENT, KIND_REFUND)

# Only completed entries are ever written
TRANSACTION_STATUS_COMMITTED: str = "committed"


# =============================================================================
# ACTION PRICING CONSTANTS
# =============================================================================
# Voice agent sessions: max(2 + ceil(duration / 10), 3), 5-120 minutes
VOICE_AGENT_BASE_COST: int = 2
VOICE_AGENT_DURATION_UNIT: int = 10
VOICE_AGENT_MINIMUM_COST: int = 3
VOICE_AGENT_MIN_DURATION: int = 5
VOICE_AGENT_MAX_DURATION: int = 120

# Courses: max(chapters * lessons_per_chapter + chapters, 3)
COURSE_MINIMUM_COST: int = 3

# Presentations: tiered by slide count, 3-50 slides
PRESENTATION_MIN_SLIDES: int = 3
PRESENTATION_MAX_SLIDES: int = 50
PRESENTATION_SLIDE_TIERS: Tuple[Tuple[int, int], ...] = (
    (5, 1),
    (15, 2),
    (30, 3),
)
PRESENTATION_OVERFLOW_COST: int = 4


# =============================================================================
# PRICING RULE DEFINITION
# =============================================================================
@dataclass(frozen=True)
class ParameterRange:
    """Inclusive integer range accepted for one action parameter."""
    name: str
    minimum: int
    maximum: int


@dataclass(frozen=True)
class PricingRule:
    """
    Pricing configuration for one kind of priced action.

    Attributes:
        kind: Action identifier used by callers (e.g., 'voice_agent')
        display_name: Human-readable name used in ledger descriptions
        formula: 'duration' (base + ceil(value / unit)), 'structure'
            (chapters * lessons + chapters) or 'tiered' (by count thresholds)
        parameters: Accepted parameters and their inclusive ranges
        base_cost: Fixed part of the 'duration' formula
        unit: Divisor of the 'duration' formula
        minimum_cost: Lower bound applied to every computed cost
        tiers: (inclusive upper bound, cost) pairs for the 'tiered' formula
        overflow_cost: Cost above the last tier
    """
    kind: str
    display_name: str
    formula: str
    parameters: Tuple[ParameterRange, ...]
    base_cost: int = 0
    unit: int = 1
    minimum_cost: int = 1
    tiers: Tuple[Tuple[int, int], ...] = field(default_factory=tuple)
    overflow_cost: int = 0

    def __post_init__(self):
        constants = [self.unit, self.minimum_cost] + [cost for _, cost in self.tiers]
        if self.formula == 'duration':
            constants.append(self.base_cost)
        if self.formula == 'tiered':
            constants.append(self.overflow_cost)
        if any(not isinstance(c, int) or c <= 0 for c in constants):
            raise ValueError(f"Pricing constants for '{self.kind}' must be positive integers")

    def parameter_names(self) -> List[str]:
        return [p.name for p in self.parameters]


def _build_pricing_rules() -> Dict[str, PricingRule]:
    voice = PricingRule(
        kind='voice_agent',
        display_name='Voice agent',
        formula='duration',
        parameters=(ParameterRange('duration', VOICE_AGENT_MIN_DURATION, VOICE_AGENT_MAX_DURATION),),
        base_cost=VOICE_AGENT_BASE_COST,
        unit=VOICE_AGENT_DURATION_UNIT,
        minimum_cost=VOICE_AGENT_MINIMUM_COST,
    )
    course = PricingRule(
        kind='course',
        display_name='Course',
        formula='structure',
        parameters=(
            ParameterRange('chapters', 1, settings.COURSE_MAX_CHAPTERS),
            ParameterRange('lessons_per_chapter', 1, settings.COURSE_MAX_LESSONS_PER_CHAPTER),
        ),
        minimum_cost=COURSE_MINIMUM_COST,
    )
    presentation = PricingRule(
        kind='presentation',
        display_name='Presentation',
        formula='tiered',
        parameters=(ParameterRange('slides', PRESENTATION_MIN_SLIDES, PRESENTATION_MAX_SLIDES),),
        minimum_cost=1,
        tiers=PRESENTATION_SLIDE_TIERS,
        overflow_cost=PRESENTATION_OVERFLOW_COST,
    )
    return {rule.kind: rule for rule in (voice, course, presentation)}


PRICING_RULES: Dict[str, PricingRule] = _build_pricing_rules()

# Older callers refer to voice agents as voice sessions
PRICING_ALIASES: Dict[str, str] = {
    'voice_session': 'voice_agent',
}


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================
def get_pricing_rule(kind: str) -> Optional[PricingRule]:
    """Get the pricing rule for an action kind, resolving aliases."""
    return PRICING_RULES.get(PRICING_ALIASES.get(kind, kind))


def get_priced_kinds() -> List[str]:
    """Get all action kinds that can be priced, aliases included."""
    return list(PRICING_RULES.keys()) + list(PRICING_ALIASES.keys())
