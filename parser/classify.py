# parser/classify.py
# Document type / category / urgency / relevance for a title+description pair.
# HeuristicClassifier is deterministic and total; ModelBackedClassifier asks a
# chat-completion endpoint and falls back to the heuristic on any failure.

import os
import re
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import httpx

logger = logging.getLogger(__name__)

# -------------------- config knobs --------------------

OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1").rstrip("/")
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
OPENAI_TIMEOUT = float(os.getenv("OPENAI_TIMEOUT", "30"))
TEMPERATURE = 0.3
MAX_TOKENS = 400
PROMPT_DESCRIPTION_LIMIT = 1000
MAX_TOPICS = 5
SUMMARY_LIMIT = 200

DOCUMENT_TYPES = (
    "regulation", "proposed_rule", "final_rule", "guidance", "bulletin", "memo",
    "press_release", "announcement", "enforcement_action", "license_update",
    "policy_change", "public_notice", "emergency_rule", "advisory",
)
URGENCY_LEVELS = ("low", "medium", "high", "critical")
FALLBACK_DOCUMENT_TYPE = "announcement"
FALLBACK_URGENCY = "medium"

# First match wins.
DEFAULT_DOCUMENT_TYPE_RULES: List[Tuple[str, str]] = [
    ("proposed_rule", r"\A(?=.*\bproposed\b)(?=.*\brul(e|es|emaking)\b)"),
    ("final_rule", r"\A(?=.*\bfinal\b)(?=.*\brules?\b)"),
    ("emergency_rule", r"\bemergency\b"),
    ("regulation", r"\bregulat(ion|ions|ory)\b"),
    ("guidance", r"\bguidance\b|\bguidelines?\b"),
    ("bulletin", r"\bbulletin\b"),
    ("memo", r"\bmemo(randum)?\b"),
    ("enforcement_action", r"\benforcement\b|\bviolations?\b|\bpenalt(y|ies)\b"),
    ("license_update", r"\blicens(e|es|ing)\b|\bpermits?\b"),
    ("policy_change", r"\bpolic(y|ies)\b"),
    ("public_notice", r"\bnotice\b"),
    ("press_release", r"\bpress release\b"),
    ("advisory", r"\badvisory\b"),
]

DEFAULT_URGENCY = {
    "critical": r"emergency|immediate|urgent|recall",
    "high": r"deadline|required|mandatory",
    "low": r"\bupdate\b|reminder",
}


def _rx(pattern: Optional[str]) -> Optional[re.Pattern]:
    return re.compile(pattern, re.I | re.S) if pattern else None


def _clamp(x: float) -> float:
    return max(0.0, min(1.0, round(float(x), 3)))


@dataclass
class Classification:
    document_type: str
    category: str
    sub_category: str
    summary: str
    relevance_score: float
    topics: List[str] = field(default_factory=list)
    urgency: str = FALLBACK_URGENCY
    is_dispensary_related: bool = False
    is_licensing_related: bool = False
    is_compliance_related: bool = False
    flags: Dict[str, bool] = field(default_factory=dict)
    method: str = "heuristic"

    def to_metadata(self) -> Dict[str, Any]:
        """Keys as the UI reads them out of instrument.metadata."""
        return {
            "documentType": self.document_type,
            "category": self.category,
            "sub_category": self.sub_category,
            "summary": self.summary,
            "relevanceScore": self.relevance_score,
            "topics": list(self.topics),
            "isDispensaryRelated": self.is_dispensary_related,
            "isLicensingRelated": self.is_licensing_related,
            "isComplianceRelated": self.is_compliance_related,
            "urgency": self.urgency,
            "indicators": dict(self.flags),
            "classificationMethod": self.method,
        }


class HeuristicClassifier:
    """
    Keyword rules from a domain config's `classifier` block:

      document_types: [[type, pattern], ...]   (absent -> built-in rules)
      categories:     [{name, pattern, default_sub, sub_categories: [[sub, pattern]]}]
      flags:          {indicator: pattern}
      topics:         [{name, flag} | {name, pattern}]
      urgency:        {critical|high|low: pattern or null}
      relevance:      {base, weights: {indicator: weight}}
      require_any / negatives: optional relevance filter; negatives reject
        only items require_any misses, unless negatives_win is set
    """
    remote = False

    def __init__(self, rules: Optional[Dict[str, Any]] = None):
        rules = rules or {}
        self.default_category = rules.get("default_category", "other")
        self.default_sub_category = rules.get("default_sub_category", "general")
        default_type = rules.get("default_document_type", FALLBACK_DOCUMENT_TYPE)
        self.default_document_type = default_type if default_type in DOCUMENT_TYPES else FALLBACK_DOCUMENT_TYPE

        doc_rules = rules.get("document_types")
        if doc_rules is None:
            doc_rules = DEFAULT_DOCUMENT_TYPE_RULES
        self.document_types = [(t, _rx(p)) for t, p in doc_rules if p]

        self.categories = []
        for c in rules.get("categories") or []:
            subs = [(s, _rx(p)) for s, p in (c.get("sub_categories") or []) if p]
            self.categories.append((c["name"], _rx(c.get("pattern") or "."), c.get("default_sub") or self.default_sub_category, subs))

        self.flags = {k: _rx(p) for k, p in (rules.get("flags") or {}).items() if p}

        self.topics = []
        for t in rules.get("topics") or []:
            self.topics.append((t["name"], t.get("flag"), _rx(t.get("pattern"))))

        # a level set to null means "no rule"; a missing level keeps the default
        urgency = rules.get("urgency")
        if urgency is None:
            urgency = DEFAULT_URGENCY
        self.urgency = []
        for level in ("critical", "high", "low"):
            pattern = urgency[level] if level in urgency else DEFAULT_URGENCY[level]
            if pattern:
                self.urgency.append((level, _rx(pattern)))

        relevance = rules.get("relevance") or {}
        self.base = float(relevance.get("base", 0.5))
        self.weights = {k: float(v) for k, v in (relevance.get("weights") or {}).items()}

        self.require_any = _rx(rules.get("require_any"))
        self.negatives = _rx(rules.get("negatives"))
        self.negatives_win = bool(rules.get("negatives_win"))

    @staticmethod
    def _text(title: str, description: str) -> str:
        return f"{title or ''} {description or ''}".lower()

    def is_relevant(self, title: str, description: str = "") -> bool:
        text = self._text(title, description)
        wanted = bool(self.require_any.search(text)) if self.require_any else None
        if self.negatives and self.negatives.search(text) and (self.negatives_win or not wanted):
            return False
        if wanted is False:
            return False
        return True

    def _document_type(self, text: str) -> str:
        for doc_type, rx in self.document_types:
            if rx.search(text):
                return doc_type if doc_type in DOCUMENT_TYPES else FALLBACK_DOCUMENT_TYPE
        return self.default_document_type

    def _category(self, text: str) -> Tuple[str, str]:
        for name, rx, default_sub, subs in self.categories:
            if not rx.search(text):
                continue
            for sub, srx in subs:
                if srx.search(text):
                    return name, sub
            return name, default_sub
        return self.default_category, self.default_sub_category

    def _urgency(self, text: str) -> str:
        for level, rx in self.urgency:
            if rx.search(text):
                return level
        return FALLBACK_URGENCY

    def classify(self, title: str, description: str = "", agency_name: str = "", state_code: str = "") -> Classification:
        text = self._text(title, description)
        flags = {name: bool(rx.search(text)) for name, rx in self.flags.items()}

        topics: List[str] = []
        for name, flag, rx in self.topics:
            hit = flags.get(flag, False) if flag else bool(rx and rx.search(text))
            if hit and name not in topics:
                topics.append(name)

        score = self.base + sum(w for k, w in self.weights.items() if flags.get(k))
        category, sub_category = self._category(text)
        desc = (description or "").strip()

        return Classification(
            document_type=self._document_type(text),
            category=category,
            sub_category=sub_category,
            summary=desc[:SUMMARY_LIMIT] if desc else (title or ""),
            relevance_score=_clamp(score),
            topics=topics,
            urgency=self._urgency(text),
            is_dispensary_related=flags.get("dispensary", False),
            is_licensing_related=flags.get("licensing", False),
            is_compliance_related=flags.get("compliance", False),
            flags=flags,
        )


JSON_SPAN_RE = re.compile(r"\{.*\}", re.S)


def extract_json(reply: str) -> Optional[Dict[str, Any]]:
    m = JSON_SPAN_RE.search(reply or "")
    if not m:
        return None
    try:
        data = json.loads(m.group(0))
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


class ModelBackedClassifier:
    """
    One chat completion per item. The reply is coerced into the fixed enums;
    anything that goes wrong returns the heuristic result instead.
    """
    remote = True

    def __init__(self, llm: Dict[str, Any], heuristic: HeuristicClassifier, api_key: str,
                 base_url: str = OPENAI_BASE_URL, model: str = OPENAI_MODEL,
                 timeout: float = OPENAI_TIMEOUT, client: Optional[httpx.Client] = None):
        self.llm = llm
        self.heuristic = heuristic
        self.api_key = api_key
        self.url = f"{base_url.rstrip('/')}/chat/completions"
        self.model = model
        self.timeout = timeout
        self.client = client
        self.categories = list(llm.get("categories") or [])
        self.sub_categories = list(llm.get("sub_categories") or [])
        self.default_category = llm.get("default_category") or (self.categories[0] if self.categories else heuristic.default_category)
        self.default_sub_category = llm.get("default_sub_category") or heuristic.default_sub_category

    def is_relevant(self, title: str, description: str = "") -> bool:
        return self.heuristic.is_relevant(title, description)

    def _messages(self, title, description, agency_name, state_code):
        system = self.llm["system_prompt"].format(document_types=", ".join(DOCUMENT_TYPES))
        user = self.llm["user_prompt"].format(
            state_code=state_code, agency_name=agency_name,
            title=title, description=(description or "")[:PROMPT_DESCRIPTION_LIMIT],
        )
        return [{"role": "system", "content": system}, {"role": "user", "content": user}]

    def _complete(self, messages) -> str:
        payload = {"model": self.model, "messages": messages, "temperature": TEMPERATURE, "max_tokens": MAX_TOKENS}
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        if self.client is not None:
            r = self.client.post(self.url, json=payload, headers=headers, timeout=self.timeout)
        else:
            with httpx.Client(timeout=self.timeout) as client:
                r = client.post(self.url, json=payload, headers=headers)
        r.raise_for_status()
        return r.json()["choices"][0]["message"]["content"]

    def _coerce(self, data: Dict[str, Any], fallback: Classification) -> Classification:
        doc_type = data.get("documentType")
        category = data.get("category")
        sub_category = data.get("sub_category")
        urgency = data.get("urgency")
        try:
            score = _clamp(data.get("relevanceScore"))
        except (TypeError, ValueError):
            score = fallback.relevance_score
        topics = data.get("topics")
        topics = [str(t) for t in topics][:MAX_TOPICS] if isinstance(topics, list) else fallback.topics[:MAX_TOPICS]
        summary = data.get("summary")

        return Classification(
            document_type=doc_type if doc_type in DOCUMENT_TYPES else FALLBACK_DOCUMENT_TYPE,
            category=category if category in self.categories else self.default_category,
            sub_category=sub_category if sub_category in self.sub_categories else self.default_sub_category,
            summary=summary if isinstance(summary, str) and summary.strip() else fallback.summary,
            relevance_score=score,
            topics=topics,
            urgency=urgency if urgency in URGENCY_LEVELS else FALLBACK_URGENCY,
            is_dispensary_related=bool(data.get("isDispensaryRelated", False)),
            is_licensing_related=bool(data.get("isLicensingRelated", False)),
            is_compliance_related=bool(data.get("isComplianceRelated", False)),
            flags=fallback.flags,
            method="llm",
        )

    def classify(self, title: str, description: str = "", agency_name: str = "", state_code: str = "") -> Classification:
        fallback = self.heuristic.classify(title, description, agency_name, state_code)
        try:
            reply = self._complete(self._messages(title, description, agency_name, state_code))
        except Exception as e:
            logger.warning(f"[CLASSIFY] model call failed, using heuristic :: {e}")
            return fallback
        data = extract_json(reply)
        if data is None:
            logger.warning(f"[CLASSIFY] no JSON in model reply for '{title[:60]}', using heuristic")
            return fallback
        return self._coerce(data, fallback)


def build_classifier(cfg, api_key: Optional[str] = None):
    """Model-backed when the domain has a prompt and a key is configured."""
    heuristic = HeuristicClassifier(cfg.classifier)
    key = api_key if api_key is not None else os.getenv("OPENAI_API_KEY")
    if cfg.llm and key:
        return ModelBackedClassifier(cfg.llm, heuristic, key)
    return heuristic


def analyzed_at() -> str:
    return datetime.now(timezone.utc).isoformat()
