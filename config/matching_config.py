"""
Contact Matching Configuration.

Scores and thresholds used when deciding whether a contact seen on one
platform is the same person as an existing unified contact.

Used by:
- omnicrm/services/contact_matcher.py (tier scores, name similarity)
- omnicrm/services/contact_unifier.py (decision bands)
"""

# =============================================================================
# TIER SCORES
# =============================================================================
# Each tier yields a fixed score (or a bounded range for fuzzy names).
# The dominant score of a candidate is the highest tier it matched.

EXACT_IDENTITY_SCORE = 1.0
EMAIL_MATCH_SCORE = 0.95
PHONE_MATCH_SCORE = 0.90

# Fuzzy name matches scale linearly with similarity inside this range
FUZZY_NAME_MIN_SCORE = 0.50
FUZZY_NAME_MAX_SCORE = 0.80

# Minimum normalized name similarity (0-1) before the fuzzy tier applies
NAME_SIMILARITY_THRESHOLD = 0.75

# Phone numbers are compared on their trailing digits to absorb
# country-code and formatting differences
PHONE_TRAILING_DIGITS = 10

# =============================================================================
# DECISION BANDS
# =============================================================================

AUTO_MERGE_THRESHOLD = 0.85  # >= merges automatically
REVIEW_THRESHOLD = 0.40      # [0.40, 0.85) surfaced for review, below discarded

MATCH_TOP_K = 5

# =============================================================================
# SECONDARY SIGNALS
# =============================================================================
# A shared email domain only counts as evidence when the domain is not a
# consumer mailbox provider.

FREE_MAIL_DOMAINS = {
    'gmail.com', 'googlemail.com',
    'yahoo.com', 'ymail.com',
    'hotmail.com', 'outlook.com', 'live.com', 'msn.com',
    'icloud.com', 'me.com', 'mac.com',
    'aol.com', 'proton.me', 'protonmail.com',
    'gmx.com', 'mail.com', 'fastmail.com', 'zoho.com',
}


class MatchingConfig:
    """
    Configuration for the contact matcher.

    Wraps the module constants so a matcher can be built with overrides
    in tests without touching module state.
    """

    EXACT_IDENTITY_SCORE: float = EXACT_IDENTITY_SCORE
    EMAIL_MATCH_SCORE: float = EMAIL_MATCH_SCORE
    PHONE_MATCH_SCORE: float = PHONE_MATCH_SCORE
    FUZZY_NAME_MIN_SCORE: float = FUZZY_NAME_MIN_SCORE
    FUZZY_NAME_MAX_SCORE: float = FUZZY_NAME_MAX_SCORE
    NAME_SIMILARITY_THRESHOLD: float = NAME_SIMILARITY_THRESHOLD
    PHONE_TRAILING_DIGITS: int = PHONE_TRAILING_DIGITS
    AUTO_MERGE_THRESHOLD: float = AUTO_MERGE_THRESHOLD
    REVIEW_THRESHOLD: float = REVIEW_THRESHOLD
    MATCH_TOP_K: int = MATCH_TOP_K

    def __init__(self, **overrides):
        for key, value in overrides.items():
            if not hasattr(MatchingConfig, key):
                raise ValueError(f"Unknown matching setting: {key}")
            setattr(self, key, value)
