"""
Contact Matcher for OmniCRM.

Scores one platform contact against a user's existing unified contacts in
four tiers:
1. Exact identity - the (platform, native id) pair is already linked
2. Email - normalized address equality
3. Phone - trailing-digit comparison
4. Fuzzy name + secondary signal - name similarity backed by a shared
   company domain or matching initials

A candidate's score is the highest tier it reached; ``matched_fields``
lists every signal that fired. The matcher is pure: same inputs, same
ranked output, no storage access.
"""
import logging
import re
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Iterable, Optional

from rapidfuzz import fuzz

from config.bot_patterns import get_domain_from_email
from config.matching_config import FREE_MAIL_DOMAINS, MatchingConfig
from omnicrm.services.contact_store import PlatformIdentity, UnifiedContact
from omnicrm.services.phone_utils import phone_match_key
from omnicrm.services.platforms import PlatformContact

logger = logging.getLogger(__name__)

# Name prefixes to strip before comparing (case-insensitive)
NAME_PREFIXES = {'dr', 'mr', 'mrs', 'ms', 'mx', 'prof', 'rev'}

# Name suffixes to strip before comparing (case-insensitive, may have trailing punctuation)
NAME_SUFFIXES = {
    'md', 'phd', 'jr', 'sr', 'ii', 'iii', 'iv',
    'esq', 'mba', 'jd', 'cpa', 'dds', 'rn',
}

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


class MatchDecision(str, Enum):
    AUTO_MERGE = "auto_merge"
    NEEDS_REVIEW = "needs_review"
    DISCARD = "discard"


@dataclass
class MatchCandidate:
    """A scored potential match. Ephemeral; never stored."""
    contact_id: str
    score: float
    matched_fields: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


def classify_score(score: float, config: Optional[MatchingConfig] = None) -> MatchDecision:
    """Map a match score onto its decision band."""
    cfg = config or MatchingConfig()
    if score >= cfg.AUTO_MERGE_THRESHOLD:
        return MatchDecision.AUTO_MERGE
    if score >= cfg.REVIEW_THRESHOLD:
        return MatchDecision.NEEDS_REVIEW
    return MatchDecision.DISCARD


def normalize_email(email: Optional[str]) -> Optional[str]:
    if not email:
        return None
    cleaned = email.strip().lower()
    return cleaned if '@' in cleaned else None


def normalize_name(name: Optional[str]) -> str:
    """
    Lower-case a display name and drop honorifics, credentials and punctuation.

    Examples:
        "Dr. Jane Q. Doe, PhD" -> "jane q doe"
        "Sam Lee Jr." -> "sam lee"
    """
    if not name:
        return ""
    if ',' in name:
        name = name.split(',')[0]
    parts = re.sub(r"[^\w\s'-]", ' ', name.lower()).split()
    while parts and parts[0].rstrip('.') in NAME_PREFIXES:
        parts.pop(0)
    while parts and parts[-1].rstrip('.') in NAME_SUFFIXES:
        parts.pop()
    return ' '.join(parts)


def _initials(normalized: str) -> Optional[tuple[str, str]]:
    parts = normalized.split()
    if len(parts) < 2:
        return None
    return parts[0][0], parts[-1][0]


class ContactMatcher:
    """
    Ranks existing unified contacts as candidates for one platform contact.

    Usage:
        matcher = ContactMatcher()
        candidates = matcher.find_matches(contact, "email", contacts, identities)
    """

    def __init__(self, config: Optional[MatchingConfig] = None):
        self.config = config or MatchingConfig()

    def find_matches(
        self,
        contact: PlatformContact,
        platform: str,
        contacts: Iterable[UnifiedContact],
        identities: Iterable[PlatformIdentity],
    ) -> list[MatchCandidate]:
        """
        Score ``contact`` against every unified contact of one user.

        Args:
            contact: The platform contact being unified
            platform: Platform tag of ``contact``
            contacts: The user's unified contacts
            identities: The user's platform identities (any platform)

        Returns:
            At most MATCH_TOP_K candidates at or above the review threshold,
            highest score first, ties broken by contact age then id
        """
        cfg = self.config
        by_contact: dict[str, list[PlatformIdentity]] = {}
        for identity in identities:
            by_contact.setdefault(identity.contact_id, []).append(identity)

        # Tier 1 short-circuits everything else
        for identity in _iter_identities(by_contact):
            if identity.platform == platform and identity.platform_native_id == contact.platform_native_id:
                return [MatchCandidate(
                    contact_id=identity.contact_id,
                    score=cfg.EXACT_IDENTITY_SCORE,
                    matched_fields=["platform_identity"],
                )]

        email = normalize_email(contact.email)
        phone_key = phone_match_key(contact.phone, cfg.PHONE_TRAILING_DIGITS)
        name = normalize_name(contact.name)

        scored = []
        for unified in contacts:
            candidate = self._score(unified, by_contact.get(unified.id, []), email, phone_key, name)
            if candidate and candidate.score >= cfg.REVIEW_THRESHOLD:
                scored.append((candidate, unified))

        scored.sort(key=lambda pair: (
            -pair[0].score,
            pair[1].created_at or _EPOCH,
            pair[1].id,
        ))
        return [candidate for candidate, _ in scored[:cfg.MATCH_TOP_K]]

    def _score(
        self,
        unified: UnifiedContact,
        identities: list[PlatformIdentity],
        email: Optional[str],
        phone_key: Optional[str],
        name: str,
    ) -> Optional[MatchCandidate]:
        cfg = self.config
        score = 0.0
        matched = []

        known_emails = {normalize_email(unified.email)}
        known_emails.update(normalize_email(i.observed_email) for i in identities)
        known_emails.discard(None)

        if email and email in known_emails:
            score = max(score, cfg.EMAIL_MATCH_SCORE)
            matched.append("email")

        if phone_key:
            known_phones = {phone_match_key(unified.phone, cfg.PHONE_TRAILING_DIGITS)}
            known_phones.update(phone_match_key(i.observed_phone, cfg.PHONE_TRAILING_DIGITS) for i in identities)
            if phone_key in known_phones:
                score = max(score, cfg.PHONE_MATCH_SCORE)
                matched.append("phone")

        if name:
            known_names = {normalize_name(unified.full_name)}
            known_names.update(normalize_name(i.observed_name) for i in identities)
            known_names.discard("")

            similarity, best_name = 0.0, ""
            for other in sorted(known_names):
                ratio = fuzz.token_sort_ratio(name, other) / 100.0
                if ratio > similarity:
                    similarity, best_name = ratio, other

            if similarity >= cfg.NAME_SIMILARITY_THRESHOLD:
                secondary = self._secondary_signals(email, known_emails, name, best_name)
                if secondary:
                    score = max(score, self._fuzzy_score(similarity))
                    matched.append("name")
                    matched.extend(secondary)

        if not matched:
            return None
        return MatchCandidate(contact_id=unified.id, score=round(score, 4), matched_fields=matched)

    def _secondary_signals(
        self,
        email: Optional[str],
        known_emails: set,
        name: str,
        other_name: str,
    ) -> list[str]:
        signals = []

        domain = get_domain_from_email(email) if email else None
        if domain and domain not in FREE_MAIL_DOMAINS:
            if any(get_domain_from_email(e) == domain for e in known_emails):
                signals.append("email_domain")

        ours, theirs = _initials(name), _initials(other_name)
        if ours and theirs and ours == theirs:
            signals.append("initials")

        return signals

    def _fuzzy_score(self, similarity: float) -> float:
        """Scale similarity in [threshold, 1] linearly onto the fuzzy score range."""
        cfg = self.config
        span = 1.0 - cfg.NAME_SIMILARITY_THRESHOLD
        fraction = (similarity - cfg.NAME_SIMILARITY_THRESHOLD) / span if span > 0 else 1.0
        fraction = min(max(fraction, 0.0), 1.0)
        return cfg.FUZZY_NAME_MIN_SCORE + fraction * (cfg.FUZZY_NAME_MAX_SCORE - cfg.FUZZY_NAME_MIN_SCORE)


def _iter_identities(by_contact: dict[str, list[PlatformIdentity]]) -> Iterable[PlatformIdentity]:
    for contact_id in sorted(by_contact):
        yield from by_contact[contact_id]
