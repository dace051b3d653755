"""
Status page rendering for CertMon.

Records are ordered by expiration so the certificates closest to expiry come
first; ties are broken by domain name. Domains without a known expiration
form one group that sorts before all known expirations by default (the
place a zero timestamp would take), or after them with unknown_first=False.
"""

import html
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Tuple

from certmon import __version__
from certmon.table import ExpirationRecord, ExpirationTable, utcnow

UNKNOWN = "unknown"

STATE_UNKNOWN = "unknown"
STATE_STALE = "stale"
STATE_EXPIRED = "expired"
STATE_OK = "ok"


def _sort_key(record: ExpirationRecord, unknown_first: bool) -> Tuple[int, float, str]:
    if record.expiration is None:
        group = 0 if unknown_first else 2
        return (group, 0.0, record.domain)
    return (1, record.expiration.timestamp(), record.domain)


def sort_records(
    records: Iterable[ExpirationRecord], unknown_first: bool = True
) -> List[ExpirationRecord]:
    """Order records by expiration ascending, then by domain name."""
    return sorted(records, key=lambda record: _sort_key(record, unknown_first))


def format_expiration(expiration: Optional[datetime]) -> str:
    """Format an expiration as RFC 3339 in UTC, or the unknown marker."""
    if expiration is None:
        return UNKNOWN
    if expiration.tzinfo is None:
        expiration = expiration.replace(tzinfo=timezone.utc)
    return expiration.astimezone(timezone.utc).isoformat(timespec="seconds")


def record_state(
    record: ExpirationRecord, now: Optional[datetime] = None, stale_after: Optional[float] = None
) -> str:
    """
    Classify a record for display.

    Args:
        record: Record to classify
        now: Reference time, defaults to the current UTC time
        stale_after: Seconds after which a successful probe is considered stale

    Returns:
        One of "unknown", "stale", "expired" or "ok"
    """
    now = now or utcnow()
    if record.expiration is None:
        return STATE_UNKNOWN
    if record.last_error is not None:
        return STATE_STALE
    if (
        stale_after is not None
        and record.last_success is not None
        and (now - record.last_success).total_seconds() > stale_after
    ):
        return STATE_STALE
    if record.expiration <= now:
        return STATE_EXPIRED
    return STATE_OK


def render_text(
    records: Iterable[ExpirationRecord],
    unknown_first: bool = True,
    now: Optional[datetime] = None,
    stale_after: Optional[float] = None,
) -> str:
    """Render records as an aligned plain-text table."""
    now = now or utcnow()
    ordered = sort_records(records, unknown_first)

    rows = [("DOMAIN", "CERTIFICATE EXPIRES", "STATE")]
    for record in ordered:
        rows.append(
            (record.domain, format_expiration(record.expiration), record_state(record, now, stale_after))
        )

    domain_width = max(len(row[0]) for row in rows)
    expires_width = max(len(row[1]) for row in rows)
    lines = [
        f"{domain:<{domain_width}}  {expires:<{expires_width}}  {state}".rstrip()
        for domain, expires, state in rows
    ]
    return "\n".join(lines) + "\n"


_PAGE_HEAD = """<!DOCTYPE html>
<html>
<head>
<title>CertMon: Monitoring TLS Certificates</title>
<meta charset="utf-8">
<meta http-equiv="refresh" content="60">
<link href='https://tools-static.wmflabs.org/fontcdn/css?family=Roboto+Slab:400,700' rel='stylesheet' type='text/css'/>
<style>
* {
  font-family: 'Roboto Slab', serif;
}
h1 {
  color: #0066ff;
  margin-left: 1em;
  margin-top: 1em;
}
p {
  margin-left: 5em;
}
th {
  text-align: left;
  padding-right: 2em;
}
td {
  padding-right: 2em;
}
tr.unknown td { color: #888888; }
tr.stale td { color: #cc7a00; }
tr.expired td { color: #cc0000; font-weight: bold; }
.error { font-size: smaller; }
</style>
</head>
"""


def render_html(
    records: Iterable[ExpirationRecord],
    unknown_first: bool = True,
    now: Optional[datetime] = None,
    stale_after: Optional[float] = None,
    interval: Optional[str] = None,
) -> str:
    """Render records as the HTML status page."""
    now = now or utcnow()
    ordered = sort_records(records, unknown_first)

    every = f"Every {html.escape(interval)}" if interval else "Periodically"
    parts = [
        _PAGE_HEAD,
        "<body><h1>CertMon: Monitoring TLS Certificates</h1>\n",
        f"<p>{every}, this job checks the expiration dates of TLS certificates.\n"
        'It exposes these dates as <a href="/metrics">metrics</a> for monitoring with '
        '<a href="https://prometheus.io/">Prometheus</a>.</p>\n',
        "<p><table>\n",
        "<tr><th>Domain</th><th>Certificate expires</th><th>State</th><th>Last error</th></tr>\n",
    ]

    for record in ordered:
        state = record_state(record, now, stale_after)
        error = ""
        if record.last_error is not None:
            error = (
                f'<span class="error">{html.escape(record.last_error)} '
                f"({record.failures} consecutive)</span>"
            )
        parts.append(
            f'<tr class="{state}"><td>{html.escape(record.domain)}</td>'
            f"<td>{format_expiration(record.expiration)}</td>"
            f"<td>{state}</td><td>{error}</td></tr>\n"
        )

    parts.append("</table></p>\n")
    parts.append(
        f"<p><small>CertMon v{__version__} | generated {format_expiration(now)}</small></p>\n"
    )
    parts.append("</body></html>\n")
    return "".join(parts)


class StatusRenderer:
    """Renders snapshots of an ExpirationTable."""

    def __init__(
        self,
        table: ExpirationTable,
        unknown_first: bool = True,
        stale_after: Optional[float] = None,
        interval: Optional[str] = None,
    ):
        self.table = table
        self.unknown_first = unknown_first
        self.stale_after = stale_after
        self.interval = interval

    def ordered(self) -> List[ExpirationRecord]:
        return sort_records(self.table.snapshot(), self.unknown_first)

    def render_text(self, now: Optional[datetime] = None) -> str:
        return render_text(self.table.snapshot(), self.unknown_first, now, self.stale_after)

    def render_html(self, now: Optional[datetime] = None) -> str:
        return render_html(
            self.table.snapshot(), self.unknown_first, now, self.stale_after, self.interval
        )

    def render(self, fmt: str = "html", now: Optional[datetime] = None) -> str:
        """Render the current table as "html" or "text"."""
        if fmt == "html":
            return self.render_html(now)
        if fmt == "text":
            return self.render_text(now)
        raise ValueError(f"Unknown report format: {fmt}")
