"""
Persona descriptors: everything that differs between bot variants.

A persona bundles the intent catalog, response templates, sentiment lexicon,
pricing/budget tables and the state-machine variant. Personas live in
dialogue_bot/personas/<name>.yaml and are loaded once.

Usage:
    from dialogue_bot.persona import load_persona

    persona = load_persona("influencer_negotiation")
    persona.catalog[0].id
"""

import re
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Pattern, Tuple, Union

import yaml

from dialogue_bot.pricing import PricingTable, ServiceBudget


PERSONAS_DIR = Path(__file__).parent / "personas"

DEFAULT_INTENT = "default"

ESCALATION = "escalation"
NEGOTIATION = "negotiation"
STATE_MACHINES = (ESCALATION, NEGOTIATION)

KNOWN_ENTITIES = (
    "order_number",
    "price",
    "followers",
    "engagement",
    "platform",
    "content_type",
    "niche",
    "demographics",
    "service_type",
)


class PersonaConfigError(ValueError):
    """Malformed persona descriptor"""


@dataclass(frozen=True)
class IntentDefinition:
    """One catalog row: keywords score +1, patterns score +2"""
    id: str
    keywords: Tuple[str, ...] = ()
    patterns: Tuple[Pattern, ...] = ()

    @classmethod
    def build(
        cls,
        intent_id: str,
        keywords: Tuple[str, ...] = (),
        patterns: Tuple[str, ...] = (),
    ) -> "IntentDefinition":
        """Compile patterns case-insensitively"""
        return cls(
            id=intent_id,
            keywords=tuple(k.lower() for k in keywords),
            patterns=tuple(re.compile(p, re.IGNORECASE) for p in patterns),
        )


@dataclass(frozen=True)
class Lexicon:
    positive: Tuple[str, ...] = ()
    negative: Tuple[str, ...] = ()


@dataclass(frozen=True)
class FollowUpRule:
    """
    Sentence appended to a reply.

    Matches when the intent fits (if given), every `requires` field is set,
    every `missing` field is empty and the intent is not in skip_intents.
    """
    text: str
    intent: Optional[str] = None
    requires: Tuple[str, ...] = ()
    missing: Tuple[str, ...] = ()
    skip_intents: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ConversationStage:
    """
    Coarse progress marker used for quick actions.

    Entered from the previous stage once `requires` is set, or from
    anywhere once `jump_on` is set.
    """
    name: str
    requires: Optional[str] = None
    jump_on: Optional[str] = None


@dataclass(frozen=True)
class QuickAction:
    text: str
    message: str


@dataclass(frozen=True)
class Persona:
    name: str
    state_machine: str
    catalog: Tuple[IntentDefinition, ...]
    templates: Mapping[str, Tuple[str, ...]]
    lexicon: Lexicon
    entities: Tuple[str, ...] = ()
    display_name: str = ""
    currency: str = "₹"
    instructions: str = ""
    response_requirements: Tuple[str, ...] = ()
    stage_transitions: Mapping[str, str] = field(default_factory=dict)
    counter_offer_intents: Tuple[str, ...] = ()
    pricing_intents: Tuple[str, ...] = ()
    pricing: Optional[PricingTable] = None
    budgets: Mapping[str, ServiceBudget] = field(default_factory=dict)
    follow_ups: Tuple[FollowUpRule, ...] = ()
    conversation_stages: Tuple[ConversationStage, ...] = ()
    quick_actions: Mapping[str, Tuple[QuickAction, ...]] = field(default_factory=dict)
    escalation_notice: str = ""
    apology: str = ""

    @property
    def intent_ids(self) -> Tuple[str, ...]:
        return tuple(intent.id for intent in self.catalog)

    @property
    def uses_escalation(self) -> bool:
        return self.state_machine == ESCALATION

    @property
    def uses_negotiation(self) -> bool:
        return self.state_machine == NEGOTIATION

    def templates_for(self, intent: str) -> Tuple[str, ...]:
        """Templates for the intent, `default` ones when it has none"""
        return self.templates.get(intent) or self.templates.get(DEFAULT_INTENT, ())

    def quick_actions_for(self, stage: Optional[str], platform: Optional[str] = None) -> Tuple[QuickAction, ...]:
        """Most specific list first: 'stage:platform', 'stage', 'default'"""
        keys = []
        if stage and platform:
            keys.append(f"{stage}:{platform}")
        if stage:
            keys.append(stage)
        keys.append(DEFAULT_INTENT)
        for key in keys:
            if key in self.quick_actions:
                return self.quick_actions[key]
        return ()


# =============================================================================
# LOADING
# =============================================================================

def _as_tuple(value: Any) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    return tuple(str(v) for v in value)


def _build_catalog(rows: List[Dict[str, Any]]) -> Tuple[IntentDefinition, ...]:
    catalog = []
    seen = set()
    for row in rows:
        intent_id = row.get("id")
        if not intent_id:
            raise PersonaConfigError("Intent without id")
        if intent_id == DEFAULT_INTENT:
            raise PersonaConfigError(f"Intent id '{DEFAULT_INTENT}' is reserved")
        if intent_id in seen:
            raise PersonaConfigError(f"Duplicate intent id '{intent_id}'")
        seen.add(intent_id)
        try:
            catalog.append(IntentDefinition.build(
                intent_id,
                keywords=_as_tuple(row.get("keywords")),
                patterns=_as_tuple(row.get("patterns")),
            ))
        except re.error as e:
            raise PersonaConfigError(f"Invalid pattern in intent '{intent_id}': {e}") from e
    return tuple(catalog)


def _build_budgets(data: Dict[str, Any]) -> Dict[str, ServiceBudget]:
    budgets = {}
    for service_type, row in (data or {}).items():
        budgets[service_type] = ServiceBudget(
            service_type=service_type,
            preferred=int(row["preferred"]),
            max=int(row["max"]),
            label=row.get("label", ""),
            keywords=tuple(k.lower() for k in _as_tuple(row.get("keywords"))),
        )
    return budgets


def persona_from_dict(data: Dict[str, Any], name: Optional[str] = None) -> Persona:
    """
    Build a Persona from a parsed descriptor.

    Raises:
        PersonaConfigError: missing sections, bad regex, reserved/duplicate
            intent ids, unknown state machine or entity kind
    """
    name = name or data.get("name")
    if not name:
        raise PersonaConfigError("Persona has no name")

    state_machine = data.get("state_machine", ESCALATION)
    if state_machine not in STATE_MACHINES:
        raise PersonaConfigError(f"Unknown state_machine '{state_machine}' in persona '{name}'")

    if not data.get("intents"):
        raise PersonaConfigError(f"Persona '{name}' defines no intents")
    templates = data.get("templates") or {}
    if DEFAULT_INTENT not in templates:
        raise PersonaConfigError(f"Persona '{name}' has no '{DEFAULT_INTENT}' templates")

    entities = _as_tuple(data.get("entities"))
    unknown = [e for e in entities if e not in KNOWN_ENTITIES]
    if unknown:
        raise PersonaConfigError(f"Unknown entities {unknown} in persona '{name}'")

    negotiation = data.get("negotiation") or {}
    lexicon = data.get("lexicon") or {}

    try:
        pricing = PricingTable.from_dict(data["pricing"]) if data.get("pricing") else None
        budgets = _build_budgets(data.get("budgets"))
    except (KeyError, TypeError, ValueError, IndexError) as e:
        raise PersonaConfigError(f"Invalid pricing data in persona '{name}': {e}") from e

    return Persona(
        name=name,
        state_machine=state_machine,
        catalog=_build_catalog(data["intents"]),
        templates={k: _as_tuple(v) for k, v in templates.items()},
        lexicon=Lexicon(
            positive=tuple(w.lower() for w in _as_tuple(lexicon.get("positive"))),
            negative=tuple(w.lower() for w in _as_tuple(lexicon.get("negative"))),
        ),
        entities=entities,
        display_name=data.get("display_name", name),
        currency=data.get("currency", "₹"),
        instructions=(data.get("instructions") or "").strip(),
        response_requirements=_as_tuple(data.get("response_requirements")),
        stage_transitions=dict(negotiation.get("stage_transitions") or {}),
        counter_offer_intents=_as_tuple(negotiation.get("counter_offer_intents")),
        pricing_intents=_as_tuple(data.get("pricing_intents")),
        pricing=pricing,
        budgets=budgets,
        follow_ups=tuple(
            FollowUpRule(
                text=row["text"],
                intent=row.get("intent"),
                requires=_as_tuple(row.get("requires")),
                missing=_as_tuple(row.get("missing")),
                skip_intents=_as_tuple(row.get("skip_intents")),
            )
            for row in data.get("follow_ups") or []
        ),
        conversation_stages=tuple(
            ConversationStage(
                name=row["name"],
                requires=row.get("requires"),
                jump_on=row.get("jump_on"),
            )
            for row in data.get("conversation_stages") or []
        ),
        quick_actions={
            key: tuple(QuickAction(text=a["text"], message=a["message"]) for a in actions)
            for key, actions in (data.get("quick_actions") or {}).items()
        },
        escalation_notice=(data.get("escalation") or {}).get("notice", ""),
        apology=data.get("apology", ""),
    )


def load_persona_file(path: Union[str, Path]) -> Persona:
    path = Path(path)
    if not path.exists():
        raise PersonaConfigError(f"Persona file not found: {path}")
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    return persona_from_dict(data, name=data.get("name") or path.stem)


@lru_cache(maxsize=None)
def load_persona(name: str) -> Persona:
    """Load a bundled persona by name (cached) or a persona file by path"""
    candidate = Path(name)
    if candidate.suffix in (".yaml", ".yml"):
        return load_persona_file(candidate)
    return load_persona_file(PERSONAS_DIR / f"{name}.yaml")


def available_personas() -> List[str]:
    return sorted(p.stem for p in PERSONAS_DIR.glob("*.yaml"))
