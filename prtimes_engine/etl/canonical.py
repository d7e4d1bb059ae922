"""Identity keys used to merge duplicate company records.

A company is identified by the host of its website. When the website cannot
be parsed the legal-entity-stripped company name is used instead, and as a
last resort a key scoped to the record id.

``CANONICAL_KEY_SQL`` reproduces the same key inside PostgreSQL for the
database fallback search; the two must stay in step. Both sides are built
from the same regular expressions, which are written in the subset shared by
Python ``re`` and PostgreSQL AREs. Hosts are ASCII only so case folding does
not depend on the database collation.
"""

import re
from typing import Optional

from prtimes_engine.models import CompanyRelease

NO_NAME = "no-name"
WEBSITE_SENTINEL = "-"

# Includes the full-width space common in Japanese company names.
_WHITESPACE = r"[ \t\n\r\f\v　]"
_EDGE_WHITESPACE = rf"^{_WHITESPACE}+|{_WHITESPACE}+$"
_SCHEME = r"^https?://"
_AUTHORITY = r"^[^/?#]*"
_USERINFO = r"^.*@"
_PORT = r":.*$"
_HOST = r"^[A-Za-z0-9_.-]+$"
_WWW = r"^www\."
# Matched after whitespace removal, so "Co., Ltd." arrives here as "co.,ltd.".
_LEGAL_ENTITY_PATTERN = r"株式会社|（株）|\(株\)|㈱|有限会社|合同会社|co\.,ltd\.|ltd\.|inc\.|corp\.|k\.k\."

_EDGE_WHITESPACE_RE = re.compile(_EDGE_WHITESPACE)
_WHITESPACE_RE = re.compile(rf"{_WHITESPACE}+")
_SCHEME_RE = re.compile(_SCHEME, re.IGNORECASE)
_AUTHORITY_RE = re.compile(_AUTHORITY)
_USERINFO_RE = re.compile(_USERINFO, re.DOTALL)
_PORT_RE = re.compile(_PORT, re.DOTALL)
_HOST_RE = re.compile(r"[A-Za-z0-9_.-]+")
_WWW_RE = re.compile(_WWW)
_LEGAL_ENTITY_RE = re.compile(_LEGAL_ENTITY_PATTERN)


def _trim(value: str) -> str:
    return _EDGE_WHITESPACE_RE.sub("", value)


def is_usable_website(website: Optional[str]) -> bool:
    """True when the stored website is neither empty nor the ``-`` sentinel."""
    if website is None:
        return False
    value = _trim(website)
    return bool(value) and value != WEBSITE_SENTINEL


def extract_domain(url: Optional[str]) -> Optional[str]:
    """Return the lower-cased host of ``url`` without ``www.``, or None."""
    if not url:
        return None

    candidate = _SCHEME_RE.sub("", _trim(url), count=1)
    host = _AUTHORITY_RE.match(candidate).group(0)
    host = _PORT_RE.sub("", _USERINFO_RE.sub("", host, count=1), count=1)
    if not _HOST_RE.fullmatch(host):
        return None
    return _WWW_RE.sub("", host.lower(), count=1) or None


def normalize_name(name: Optional[str]) -> str:
    """Lower-case the name and strip legal-entity tokens and whitespace."""
    trimmed = _trim(name or "")
    if not trimmed:
        return NO_NAME
    compact = _WHITESPACE_RE.sub("", trimmed.lower())
    return _LEGAL_ENTITY_RE.sub("", compact)


def canonical_key(record: CompanyRelease) -> str:
    return extract_domain(record.company_website) or normalize_name(record.company_name) or f"fallback_{record.id}"


def _sql_trim(column: str) -> str:
    return f"regexp_replace({column}, '{_EDGE_WHITESPACE}', '', 'g')"


USABLE_WEBSITE_SQL = f"company_website IS NOT NULL AND {_sql_trim('company_website')} NOT IN ('', '{WEBSITE_SENTINEL}')"

_SQL_RAW_HOST = (
    "regexp_replace(regexp_replace(substring("
    f"regexp_replace({_sql_trim('company_website')}, '{_SCHEME}', '', 'i') from '{_AUTHORITY}'), "
    f"'{_USERINFO}', ''), '{_PORT}', '')"
)
_SQL_HOST = f"regexp_replace(lower({_SQL_RAW_HOST}), '{_WWW}', '')"
_SQL_NAME = (
    f"regexp_replace(regexp_replace(lower({_sql_trim('company_name')}), '{_WHITESPACE}+', '', 'g'), "
    f"'{_LEGAL_ENTITY_PATTERN}', '', 'g')"
)

CANONICAL_KEY_SQL = (
    "CASE "
    f"WHEN {_SQL_RAW_HOST} ~ '{_HOST}' AND {_SQL_HOST} <> '' THEN {_SQL_HOST} "
    f"WHEN company_name IS NULL OR {_sql_trim('company_name')} = '' THEN '{NO_NAME}' "
    f"ELSE COALESCE(NULLIF({_SQL_NAME}, ''), 'fallback_' || id::text) "
    "END"
)
