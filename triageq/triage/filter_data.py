"""
Module: filter_data
Purpose: Header, sender and keyword constants for the subscription filter.
Dependencies: None (pure data, no imports)

Separates filter policy data from filter logic. Edit this file to add/remove
domains or keywords without touching the filtering algorithm in filters.py.
Per-deployment domains belong in config/bulk_senders.yaml instead.
"""

# ---------------------------------------------------------------------------
# Header values that mark mass distribution
# ---------------------------------------------------------------------------

BULK_PRECEDENCE_VALUES: frozenset[str] = frozenset({"bulk", "list", "junk"})

# RFC 3834: anything other than "no" means machine-generated
AUTO_SUBMITTED_HUMAN_VALUE = "no"

# ---------------------------------------------------------------------------
# Local parts used by automated senders (compared after stripping . _ -)
# ---------------------------------------------------------------------------

NO_REPLY_LOCAL_PARTS: frozenset[str] = frozenset(
    {
        "noreply",
        "donotreply",
        "notifications",
        "notification",
        "newsletter",
        "newsletters",
        "marketing",
        "mailer",
        "mailerdaemon",
        "bounce",
        "bounces",
        "digest",
        "updates",
        "news",
        "promo",
        "promotions",
        "deals",
    }
)

# ---------------------------------------------------------------------------
# Default bulk-sender domains (ESPs, social digests, marketing platforms)
# Subdomains match too: "em.mailchimp.com" -> "mailchimp.com"
# ---------------------------------------------------------------------------

DEFAULT_BULK_DOMAINS: frozenset[str] = frozenset(
    {
        # Email service providers
        "mailchimp.com",
        "mcsv.net",
        "mcdlv.net",
        "sendgrid.net",
        "sendgrid.com",
        "mailgun.org",
        "mandrillapp.com",
        "amazonses.com",
        "constantcontact.com",
        "klaviyomail.com",
        "klaviyo.com",
        "hubspotemail.net",
        "hs-email.net",
        "exacttarget.com",
        "sailthru.com",
        "braze.com",
        "customer.io",
        "sparkpostmail.com",
        "createsend.com",
        "cmail19.com",
        "cmail20.com",
        "convertkit.com",
        "beehiiv.com",
        "substack.com",
        "mailerlite.com",
        "sendinblue.com",
        "brevo.com",
        # Social network digests
        "facebookmail.com",
        "linkedin.com",
        "twitter.com",
        "x.com",
        "pinterest.com",
        "quora.com",
        "reddit.com",
        "medium.com",
        "nextdoor.com",
        "instagram.com",
        # Marketplaces / promotions
        "groupon.com",
        "retailmenot.com",
        "e.target.com",
    }
)

# ---------------------------------------------------------------------------
# Subject markers typical of newsletters and promotions
# ---------------------------------------------------------------------------

NEWSLETTER_SUBJECT_MARKERS: tuple[str, ...] = (
    "newsletter",
    "weekly digest",
    "daily digest",
    "monthly digest",
    "this week in",
    "unsubscribe",
    "% off",
    "sale ends",
    "limited time offer",
    "webinar",
    "[promo]",
)
