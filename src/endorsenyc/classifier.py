"""Keyword-based endorsement classifier.

Scores free text for endorsement likelihood with fixed additive weights:
endorsement phrases, candidate name variants, sentiment keywords, a
per-source-type bonus and an author bonus. All tables live in a
``ClassifierRules`` value so they can be overridden from the settings
table without a code change.
"""

from __future__ import annotations

import copy
import re
from dataclasses import dataclass
from typing import Any

import jsonschema

from .config import ConfigError
from .models import ClassificationResult
from .storage import get_setting, set_setting

RULES_KEY = "classifier.rules"

DEFAULT_RULES: dict[str, Any] = {
    "base_confidence": 0.5,
    "phrase_weight": 0.3,
    "mention_weight": 0.2,
    "mention_cap": 0.4,
    "sentiment_weight": 0.1,
    "author_bonus": 0.1,
    "auto_approve_threshold": 0.85,
    "human_review_threshold": 0.70,
    "endorsement_phrases": [
        " endorse ",
        "support",
        "backing",
        "voting for",
        "campaigning for",
        "proud to support",
        "standing with",
        "choosing",
        "electing",
        "recommend",
        " favor ",
        " prefer ",
        "rooting for",
    ],
    "candidates": {
        "zohran mamdani": ["zohran", "mamdani", "@zohranmamdani"],
        "andrew cuomo": ["cuomo", "andrew", "@andrewcuomo"],
        "eric adams": ["adams", "eric", "@ericadams", "mayor adams"],
        "curtis sliwa": ["sliwa", "curtis", "@curtissliwa"],
    },
    "positive_keywords": [
        "proud",
        "excited",
        "thrilled",
        "honored",
        "privileged",
        "strong",
        "effective",
        "progressive",
        "visionary",
        "leader",
    ],
    "negative_keywords": [
        "disappointed",
        "concerned",
        "worried",
        "oppose",
        "against",
        "weak",
        "ineffective",
        "corrupt",
        "unfit",
    ],
    # A type keyword padded with spaces matches as a whole word.
    "type_rules": [
        {"type": "rumored", "keywords": ["rumor", "hearing"]},
        {"type": "conditional", "keywords": ["conditional", " if "]},
        {"type": "un_endorsement", "keywords": ["retract", "withdraw"]},
    ],
    "source_bonus": {
        "twitter": 0.1,
        "instagram": 0.05,
        "press_release": 0.15,
        "interview": 0.1,
        "event": 0.05,
        "website": 0.1,
        "rss": 0.0,
    },
}

_STRING_LIST = {"type": "array", "items": {"type": "string", "minLength": 1}}
_UNIT = {"type": "number", "minimum": 0, "maximum": 1}

RULES_SCHEMA: dict[str, Any] = {
    "type": "object",
    "additionalProperties": False,
    "required": list(DEFAULT_RULES.keys()),
    "properties": {
        "base_confidence": _UNIT,
        "phrase_weight": _UNIT,
        "mention_weight": _UNIT,
        "mention_cap": _UNIT,
        "sentiment_weight": _UNIT,
        "author_bonus": _UNIT,
        "auto_approve_threshold": _UNIT,
        "human_review_threshold": _UNIT,
        "endorsement_phrases": _STRING_LIST,
        "candidates": {
            "type": "object",
            "minProperties": 1,
            "additionalProperties": {**_STRING_LIST, "minItems": 1},
        },
        "positive_keywords": _STRING_LIST,
        "negative_keywords": _STRING_LIST,
        "type_rules": {
            "type": "array",
            "items": {
                "type": "object",
                "additionalProperties": False,
                "required": ["type", "keywords"],
                "properties": {
                    "type": {"enum": ["rumored", "conditional", "un_endorsement"]},
                    "keywords": _STRING_LIST,
                },
            },
        },
        "source_bonus": {"type": "object", "additionalProperties": _UNIT},
    },
}


@dataclass(frozen=True)
class ClassifierRules:
    base_confidence: float
    phrase_weight: float
    mention_weight: float
    mention_cap: float
    sentiment_weight: float
    author_bonus: float
    auto_approve_threshold: float
    human_review_threshold: float
    endorsement_phrases: tuple[str, ...]
    candidates: tuple[tuple[str, tuple[str, ...]], ...]
    positive_keywords: tuple[str, ...]
    negative_keywords: tuple[str, ...]
    type_rules: tuple[tuple[str, tuple[str, ...]], ...]
    source_bonus: dict[str, float]

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "ClassifierRules":
        try:
            jsonschema.validate(raw, RULES_SCHEMA)
        except jsonschema.ValidationError as exc:
            raise ConfigError(f"Invalid {RULES_KEY}: {exc.message}") from exc
        return cls(
            base_confidence=float(raw["base_confidence"]),
            phrase_weight=float(raw["phrase_weight"]),
            mention_weight=float(raw["mention_weight"]),
            mention_cap=float(raw["mention_cap"]),
            sentiment_weight=float(raw["sentiment_weight"]),
            author_bonus=float(raw["author_bonus"]),
            auto_approve_threshold=float(raw["auto_approve_threshold"]),
            human_review_threshold=float(raw["human_review_threshold"]),
            endorsement_phrases=tuple(p.lower() for p in raw["endorsement_phrases"]),
            candidates=tuple(
                (name.lower(), tuple(variant.lower() for variant in variants))
                for name, variants in raw["candidates"].items()
            ),
            positive_keywords=tuple(k.lower() for k in raw["positive_keywords"]),
            negative_keywords=tuple(k.lower() for k in raw["negative_keywords"]),
            type_rules=tuple(
                (rule["type"], tuple(k.lower() for k in rule["keywords"]))
                for rule in raw["type_rules"]
            ),
            source_bonus={key: float(value) for key, value in raw["source_bonus"].items()},
        )


def default_rules() -> ClassifierRules:
    return ClassifierRules.from_dict(copy.deepcopy(DEFAULT_RULES))


def load_classifier_rules(conn) -> ClassifierRules:
    raw = get_setting(conn, RULES_KEY, None)
    if raw is None:
        return default_rules()
    if not isinstance(raw, dict):
        raise ConfigError(f"{RULES_KEY} must be a JSON object")
    return ClassifierRules.from_dict(raw)


def set_classifier_rules(conn, raw: dict[str, Any]) -> ClassifierRules:
    rules = ClassifierRules.from_dict(raw)
    set_setting(conn, RULES_KEY, raw)
    return rules


def keyword_pattern(keyword: str) -> re.Pattern[str]:
    prefix = r"\b" if keyword.startswith(" ") else ""
    suffix = r"\b" if keyword.endswith(" ") else ""
    return re.compile(prefix + re.escape(keyword.strip()) + suffix)


class EndorsementClassifier:
    def __init__(self, rules: ClassifierRules | None = None) -> None:
        self.rules = rules or default_rules()
        self._type_patterns = tuple(
            (endorsement_type, tuple(keyword_pattern(keyword) for keyword in keywords))
            for endorsement_type, keywords in self.rules.type_rules
        )

    def classify(
        self,
        text: str,
        source_url: str,
        source_type: str,
        author: str | None = None,
        organization: str | None = None,
    ) -> ClassificationResult:
        rules = self.rules
        lowered = (text or "").lower()

        has_phrase = any(phrase in lowered for phrase in rules.endorsement_phrases)
        mentions = self.find_candidate_mentions(lowered)
        sentiment = self.detect_sentiment(lowered)
        endorsement_type = self.detect_type(lowered)

        confidence = rules.base_confidence
        if has_phrase:
            confidence += rules.phrase_weight
        confidence += min(rules.mention_weight * len(mentions), rules.mention_cap)
        if sentiment == "positive":
            confidence += rules.sentiment_weight
        elif sentiment == "negative":
            confidence -= rules.sentiment_weight
        confidence += rules.source_bonus.get(source_type, 0.0)
        if author:
            confidence += rules.author_bonus
        confidence = round(max(0.0, min(1.0, confidence)), 4)

        endorser_info = None
        if author:
            endorser_info = {"name": author, "organization": organization}

        return ClassificationResult(
            raw_text=text or "",
            source_url=source_url,
            source_type=source_type,
            confidence=confidence,
            candidate_mentions=mentions,
            endorser_info=endorser_info,
            endorsement_type=endorsement_type,
            sentiment=sentiment,
            requires_human_review=confidence < rules.human_review_threshold,
            reasoning=self._reasoning(has_phrase, mentions, sentiment, confidence),
        )

    def find_candidate_mentions(self, lowered: str) -> list[str]:
        return [
            name
            for name, variants in self.rules.candidates
            if any(variant in lowered for variant in variants)
        ]

    def detect_sentiment(self, lowered: str) -> str:
        positive = sum(1 for word in self.rules.positive_keywords if word in lowered)
        negative = sum(1 for word in self.rules.negative_keywords if word in lowered)
        if positive > negative:
            return "positive"
        if negative > positive:
            return "negative"
        return "neutral"

    def detect_type(self, lowered: str) -> str:
        for endorsement_type, patterns in self._type_patterns:
            if any(pattern.search(lowered) for pattern in patterns):
                return endorsement_type
        return "endorsement"

    def should_auto_approve(self, result: ClassificationResult) -> bool:
        return result.confidence >= self.rules.auto_approve_threshold

    def _reasoning(
        self, has_phrase: bool, mentions: list[str], sentiment: str, confidence: float
    ) -> str:
        reasons: list[str] = []
        if has_phrase:
            reasons.append("Contains explicit endorsement language")
        if mentions:
            reasons.append(f"Mentions {len(mentions)} candidate(s)")
        if sentiment == "positive":
            reasons.append("Positive sentiment detected")
        elif sentiment == "negative":
            reasons.append("Negative sentiment detected")
        if confidence >= self.rules.auto_approve_threshold:
            reasons.append("High confidence classification")
        elif confidence >= self.rules.human_review_threshold:
            reasons.append("Medium confidence - human review recommended")
        else:
            reasons.append("Low confidence - requires human verification")
        return "; ".join(reasons)
