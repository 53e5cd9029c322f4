"""
Bot and Automated Sender Patterns.

Centralized configuration for recognizing automated senders, integrations
and system accounts that should never become unified contacts.

Used by:
- omnicrm/services/bot_filter.py (pre-filter before contact matching)
"""
import re

# =============================================================================
# EMAIL ADDRESS LOCAL-PART PATTERNS
# =============================================================================
# Checked against the local part of the email (before @). A local part
# matches when it equals a keyword or starts with one followed by a
# separator (e.g. "notifications+abc", "noreply-billing").

AUTOMATION_EMAIL_PREFIXES = {
    # Standard no-reply patterns
    'noreply', 'no-reply', 'no_reply', 'donotreply', 'do-not-reply', 'do_not_reply',

    # Notifications
    'notifications', 'notification', 'notify', 'alert', 'alerts',

    # System/automated
    'mailer', 'mailer-daemon', 'postmaster', 'bounce', 'bounces',
    'system', 'automated', 'automation', 'bot', 'robot', 'daemon',
    'admin', 'administrator', 'root',

    # Service endpoints
    'support', 'helpdesk', 'marketing', 'newsletter', 'api', 'webhook', 'test',
}

# =============================================================================
# TRANSACTIONAL / ESP DOMAINS
# =============================================================================
# Email service providers and notification relays. Subdomains match too
# (e.g. "em123.sendgrid.net").

BOT_DOMAINS = {
    # Email service providers
    'sendgrid.net', 'sendgrid.com',
    'mailchimp.com', 'mcsv.net', 'mcdlv.net', 'list-manage.com',
    'amazonses.com',
    'mailgun.org', 'mailgun.net',
    'mandrillapp.com', 'sparkpostmail.com', 'postmarkapp.com',
    'constantcontact.com', 'hubspotemail.net', 'exacttarget.com',
    'rsgsv.net', 'sailthru.com', 'customeriomail.com', 'intercom-mail.com',

    # Notification relays
    'noreply.github.com', 'notifications.github.com',
    'zapier.com', 'ifttt.com',
    'slackbot.com', 'notifications.slack.com',
    'mail.notion.so', 'alerts.atlassian.net',
    'calendar-notification.google.com',
    'mailer-daemon.googlemail.com',
}

# =============================================================================
# DISPLAY NAME / HANDLE PATTERNS
# =============================================================================

# Surnames like "Talbot" must not match, so "bot" needs a word boundary
# or a camel-case join ("DeployBot").
BOT_NAME_PATTERNS = [
    re.compile(r'\bbot\b', re.IGNORECASE),
    re.compile(r'[a-z]Bot\b'),
    re.compile(r'\bsystem\b', re.IGNORECASE),
    re.compile(r'\bnotifications?\b', re.IGNORECASE),
    re.compile(r'\bautomation\b', re.IGNORECASE),
    re.compile(r'\bno-?reply\b', re.IGNORECASE),
    re.compile(r'\bintegration$', re.IGNORECASE),
    re.compile(r'\bwebhook$', re.IGNORECASE),
]

BOT_HANDLE_PATTERNS = [
    re.compile(r'(^|[-_.])bot$', re.IGNORECASE),
    re.compile(r'^bot[-_.]', re.IGNORECASE),
    re.compile(r'[-_.]bot[-_.]', re.IGNORECASE),
    re.compile(r'[a-z]Bot$'),
    re.compile(r'^(system|automation|integration|webhook)([-_.]|$)', re.IGNORECASE),
    re.compile(r'[-_.](integration|webhook|app)$', re.IGNORECASE),
]

# Names that are purely numeric or look like a generated identifier
# (platform user ids such as "U02ABCDEF12", hex tokens, "user_1234")
ID_LIKE_NAME_PATTERN = re.compile(
    r'^(\+?[\d\s\-().]+|(?=[0-9a-f]*\d)[0-9a-f]{8,}|(?=[A-Z0-9]*\d)[A-Z][A-Z0-9]{7,}|user[_-]?\d+)$'
)

# Placeholders platforms use when no real name is available
PLACEHOLDER_NAMES = {
    'unknown', 'unknown user', 'unknown contact', 'deleted user', 'n/a', 'none',
}


def get_domain_from_email(email: str) -> str | None:
    """Extract domain from email address."""
    if not email or '@' not in email:
        return None
    return email.strip().lower().rsplit('@', 1)[1]


def get_local_part(email: str) -> str | None:
    """Extract the part before @ from an email address."""
    if not email or '@' not in email:
        return None
    return email.strip().lower().rsplit('@', 1)[0]


def is_bot_domain(email: str) -> bool:
    """
    Check if an email's domain is a known automated sender domain.

    Checks both the full domain and parent domains.
    E.g., for "em42.sendgrid.net", checks both "em42.sendgrid.net" and "sendgrid.net"
    """
    domain = get_domain_from_email(email)
    if not domain:
        return False

    domain_parts = domain.split('.')
    for i in range(len(domain_parts) - 1):
        check_domain = '.'.join(domain_parts[i:])
        if check_domain in BOT_DOMAINS:
            return True

    return False


def matching_email_prefix(email: str) -> str | None:
    """Return the automation keyword the email's local part matches, if any."""
    local = get_local_part(email)
    if not local:
        return None
    if local in AUTOMATION_EMAIL_PREFIXES:
        return local
    head = re.split(r'[+._-]', local, maxsplit=1)[0]
    if head in AUTOMATION_EMAIL_PREFIXES:
        return head
    # Compound keywords like "no-reply" contain a separator themselves
    for prefix in AUTOMATION_EMAIL_PREFIXES:
        if '-' in prefix or '_' in prefix:
            if local.startswith(prefix):
                return prefix
    return None
