"""
Keyword scoring classifier.

Each configured category carries a list of keywords or phrases. A keyword
found in the subject scores twice its weight, in the body once. The best
scoring category wins, earlier categories winning ties.
"""

import json
import logging
import re
from typing import Any, Dict, List, Optional, Pattern, Tuple

from pydantic import BaseModel, Field

from classifier.base import BaseClassifier
from models.email import UNCATEGORIZED, Classification, Priority

logger = logging.getLogger("automation_service")

SUBJECT_WEIGHT = 2.0
BODY_WEIGHT = 1.0


class CategoryRule(BaseModel):
    name: str
    keywords: Dict[str, float]
    default_priority: Priority = Priority.MEDIUM


class ClassifierConfig(BaseModel):
    categories: List[CategoryRule]
    urgent_keywords: List[str] = Field(default_factory=list)
    low_priority_keywords: List[str] = Field(default_factory=list)
    min_score: float = 1.0
    saturation: float = 2.0


def _weighted(keywords: Any) -> Dict[str, float]:
    if isinstance(keywords, dict):
        return {str(k): float(v) for k, v in keywords.items()}
    return {str(k): 1.0 for k in keywords}


DEFAULT_CONFIG = {
    "categories": [
        {
            "name": "urgent_issue",
            "keywords": ["urgent", "emergency", "asap", "immediately", "not heating", "not working",
                         "leak", "leaking", "broken", "flooding", "no power"],
            "default_priority": "high",
        },
        {
            "name": "service_request",
            "keywords": ["repair", "service", "maintenance", "fix", "technician", "appointment",
                         "install", "installation", "inspection"],
            "default_priority": "medium",
        },
        {
            "name": "sales",
            "keywords": ["quote", "pricing", "price", "purchase", "buy", "order", "discount", "catalog"],
            "default_priority": "medium",
        },
        {
            "name": "billing",
            "keywords": ["invoice", "bill", "billing", "payment", "refund", "charge", "receipt"],
            "default_priority": "medium",
        },
        {
            "name": "general_inquiry",
            "keywords": ["question", "inquiry", "information", "hours", "wondering", "curious"],
            "default_priority": "low",
        },
    ],
    "urgent_keywords": ["urgent", "emergency", "asap", "immediately", "critical"],
    "low_priority_keywords": ["no rush", "whenever", "when you get a chance", "fyi"],
    "min_score": 1.0,
    "saturation": 2.0,
}


def load_config(raw: Dict[str, Any]) -> ClassifierConfig:
    data = dict(raw)
    data["categories"] = [dict(c, keywords=_weighted(c.get("keywords", []))) for c in data.get("categories", [])]
    config = ClassifierConfig(**data)
    names = [c.name for c in config.categories]
    if not names:
        raise ValueError("Classifier config must define at least one category")
    if len(set(names)) != len(names):
        raise ValueError(f"Duplicate category names in classifier config: {names}")
    if UNCATEGORIZED in names:
        raise ValueError(f"'{UNCATEGORIZED}' is reserved")
    return config


def _pattern(phrase: str) -> Pattern:
    words = [re.escape(w) for w in phrase.split()]
    return re.compile(r"(?<!\w)" + r"\s+".join(words) + r"(?!\w)", re.IGNORECASE)


class KeywordClassifier(BaseClassifier):
    def __init__(self, config: Optional[ClassifierConfig] = None):
        self.config = config or load_config(DEFAULT_CONFIG)
        self._rules: List[Tuple[CategoryRule, List[Tuple[Pattern, float]]]] = [
            (rule, [(_pattern(k), w) for k, w in rule.keywords.items()])
            for rule in self.config.categories
        ]
        self._urgent = [_pattern(k) for k in self.config.urgent_keywords]
        self._low = [_pattern(k) for k in self.config.low_priority_keywords]

    @classmethod
    def from_file(cls, path: Optional[str]) -> "KeywordClassifier":
        """Loads a JSON category config; falls back to the built-in categories when no path is given."""
        if not path:
            return cls()
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)
        logger.info(f"Loaded classifier config from {path}")
        return cls(load_config(raw))

    @property
    def categories(self) -> List[str]:
        return [rule.name for rule in self.config.categories]

    def score(self, subject: str, body: str) -> Dict[str, float]:
        scores: Dict[str, float] = {}
        for rule, patterns in self._rules:
            total = 0.0
            for pattern, weight in patterns:
                if pattern.search(subject):
                    total += weight * SUBJECT_WEIGHT
                if pattern.search(body):
                    total += weight * BODY_WEIGHT
            scores[rule.name] = total
        return scores

    def classify(self, from_address: str, subject: str, body: str) -> Classification:
        subject = subject or ""
        body = body or ""
        scores = self.score(subject, body)

        best_rule, best = None, 0.0
        for rule, _ in self._rules:
            # strict '>' keeps the earliest category on ties
            if scores[rule.name] > best:
                best_rule, best = rule, scores[rule.name]

        total = sum(scores.values())
        if best_rule is None or best < self.config.min_score:
            return Classification(
                category=UNCATEGORIZED,
                priority=self._priority(None, subject, body),
                confidence_score=0.0,
            )

        confidence = (best / total) * min(1.0, best / self.config.saturation)
        return Classification(
            category=best_rule.name,
            priority=self._priority(best_rule, subject, body),
            confidence_score=round(confidence, 2),
        )

    def _priority(self, rule: Optional[CategoryRule], subject: str, body: str) -> Priority:
        text = f"{subject}\n{body}"
        if rule is not None and rule.name == "urgent_issue":
            return Priority.HIGH
        if any(p.search(text) for p in self._urgent):
            return Priority.HIGH
        if any(p.search(text) for p in self._low):
            return Priority.LOW
        return rule.default_priority if rule is not None else Priority.MEDIUM
