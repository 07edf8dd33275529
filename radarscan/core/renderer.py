"""PDF report renderer — turns a provider scan result into report bytes.

:func:`render_report` is a pure function: it reads the
:class:`~radarscan.schemas.scan_result.ScanResult` field by field, never
mutates it, and returns the bytes of an A4 PDF document built with ReportLab.

The report contains, in order:

* Title, scanned URL, scan time, scan id and visibility.
* Security verdict (``MALICIOUS`` / ``SAFE``) with categories and tags.
* Page information (domain, IP, country, ASN, HTTP status, title).
* Technologies detected (top 10).
* Network statistics (requests, unique IPs/countries, data transferred,
  cookie / link / console message counts).
* Domains contacted (top 15).
* Request analysis (failed requests, breakdown by resource type).
* Cookie security (secure, HttpOnly, third-party).
* Console errors and warnings.
* SSL/TLS certificate details.
* Phishing indicators.
* Malicious content counts.
* Security summary (threat level, IPs, ASNs, countries).

Sections whose source data is absent are omitted rather than failing.  Any
ReportLab failure is raised as :class:`~radarscan.core.errors.RenderError`.
"""

from __future__ import annotations

import io
import logging
from collections import Counter
from datetime import datetime, timezone
from typing import Any
from xml.sax.saxutils import escape

from reportlab.lib import colors  # type: ignore[import-untyped]
from reportlab.lib.pagesizes import A4  # type: ignore[import-untyped]
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet  # type: ignore[import-untyped]
from reportlab.lib.units import cm  # type: ignore[import-untyped]
from reportlab.platypus import (  # type: ignore[import-untyped]
    Paragraph,
    SimpleDocTemplate,
    Spacer,
    Table,
    TableStyle,
)

from radarscan.core.errors import RenderError
from radarscan.schemas.scan_result import ScanResult

logger = logging.getLogger(__name__)

_BRAND = colors.HexColor("#F6821F")
_DANGER = colors.HexColor("#CC0000")
_WARNING = colors.HexColor("#CC6600")
_SAFE = colors.HexColor("#009900")
_MUTED = colors.HexColor("#666666")

_MAX_TECHNOLOGIES = 10
_MAX_DOMAINS = 15
_MAX_REQUEST_TYPES = 5

_TABLE_STYLE = TableStyle(
    [
        ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor("#4A4A4A")),
        ("TEXTCOLOR", (0, 0), (-1, 0), colors.whitesmoke),
        ("ALIGN", (0, 0), (-1, -1), "LEFT"),
        ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
        ("ROWBACKGROUNDS", (0, 1), (-1, -1), [colors.white, colors.HexColor("#F5F5F5")]),
        ("GRID", (0, 0), (-1, -1), 0.5, colors.HexColor("#CCCCCC")),
        ("LEFTPADDING", (0, 0), (-1, -1), 8),
        ("RIGHTPADDING", (0, 0), (-1, -1), 8),
        ("TOPPADDING", (0, 0), (-1, -1), 4),
        ("BOTTOMPADDING", (0, 0), (-1, -1), 4),
    ]
)


def render_report(
    scan_result: ScanResult,
    url: str,
    *,
    generated_at: datetime | None = None,
) -> bytes:
    """Render *scan_result* for *url* as PDF bytes.

    Args:
        scan_result: Provider report.  Read only.
        url: The URL the session was created for.
        generated_at: Report timestamp; defaults to the current UTC time.

    Returns:
        Raw PDF bytes.

    Raises:
        RenderError: If the document could not be built.
    """
    generated_at = generated_at or datetime.now(tz=timezone.utc)
    try:
        return _build(scan_result, url, generated_at)
    except RenderError:
        raise
    except Exception as exc:
        logger.error("render_report failed: url=%s scan_id=%s error=%r", url, scan_result.task.uuid, exc)
        raise RenderError(f"could not render report: {type(exc).__name__}") from exc


def _build(result: ScanResult, url: str, generated_at: datetime) -> bytes:
    buf = io.BytesIO()
    doc = SimpleDocTemplate(
        buf,
        pagesize=A4,
        title="RadarScan Security Report",
        leftMargin=1.8 * cm,
        rightMargin=1.8 * cm,
        topMargin=1.8 * cm,
        bottomMargin=2 * cm,
    )
    styles = getSampleStyleSheet()
    story = _Story(styles)

    # -- Title & metadata ---------------------------------------------------
    story.title("RadarScan Security Report")
    story.line(f"URL: {url}")
    story.line(f"Scanned: {result.task.time or generated_at.strftime('%Y-%m-%d %H:%M:%S UTC')}", color=_MUTED)
    if result.task.uuid:
        story.line(f"Scan ID: {result.task.uuid}", color=_MUTED)
    if result.task.visibility:
        story.line(f"Visibility: {result.task.visibility}", color=_MUTED)

    # -- Verdict ------------------------------------------------------------
    overall = result.verdicts.overall
    story.heading("Security Verdict")
    story.line("MALICIOUS" if overall.malicious else "SAFE", bold=True, color=_DANGER if overall.malicious else _SAFE)
    if overall.categories:
        story.line(f"Categories: {', '.join(overall.categories)}")
    if overall.tags:
        story.line(f"Tags: {', '.join(overall.tags)}")

    # -- Page information ---------------------------------------------------
    page = result.page
    rows = [
        ("Domain", page.domain),
        ("IP Address", page.ip),
        ("Country", page.country),
        ("ASN", page.asn),
        ("HTTP Status", page.status),
        ("Page Title", page.title),
        ("Server", page.server),
    ]
    rows = [(label, str(value)) for label, value in rows if value not in (None, "")]
    if rows:
        story.heading("Page Information")
        story.table(["Field", "Value"], rows)

    # -- Technologies -------------------------------------------------------
    wappa = result.meta.processors.wappa
    if wappa and wappa.data:
        story.heading("Technologies Detected")
        for tech in wappa.data[:_MAX_TECHNOLOGIES]:
            categories = ", ".join(c.name for c in tech.categories if c.name)
            label = f"{tech.app} {tech.version}" if tech.version else tech.app
            story.line(f"- {label} ({categories})" if categories else f"- {label}")

    # -- Network statistics -------------------------------------------------
    data, stats = result.data, result.stats
    story.heading("Network Statistics")
    story.table(
        ["Metric", "Value"],
        [
            ("Total Requests", str(len(data.requests))),
            ("Unique IPs", str(stats.uniq_ips)),
            ("Unique Countries", str(stats.uniq_countries)),
            ("Data Transferred", f"{stats.data_length / 1024:.2f} KB"),
            ("Cookies Found", str(len(data.cookies))),
            ("Links Found", str(len(data.links))),
            ("Console Messages", str(len(data.console))),
        ],
    )

    # -- Domains contacted --------------------------------------------------
    if result.lists.domains:
        story.heading("Domains Contacted")
        for domain in result.lists.domains[:_MAX_DOMAINS]:
            story.line(f"- {domain}", size=9)

    # -- Request analysis ---------------------------------------------------
    if data.requests:
        story.heading("Request Analysis")
        failed = [r for r in data.requests if r.status is not None and r.status >= 400]
        story.line(f"Total Requests: {len(data.requests)}")
        if failed:
            story.line(f"Failed Requests: {len(failed)}", color=_WARNING)
        by_type = Counter(r.type or "other" for r in data.requests)
        for req_type, count in by_type.most_common(_MAX_REQUEST_TYPES):
            story.line(f"{req_type}: {count}", size=9, indent=12)

    # -- Cookie security ----------------------------------------------------
    if data.cookies:
        story.heading("Cookie Security")
        third_party = [
            c for c in data.cookies if c.domain and page.domain and page.domain not in c.domain
        ]
        story.line(f"Total Cookies: {len(data.cookies)}")
        story.line(f"Secure Cookies: {sum(1 for c in data.cookies if c.secure)}")
        story.line(f"HttpOnly Cookies: {sum(1 for c in data.cookies if c.http_only)}")
        if third_party:
            story.line(f"Third-Party Cookies: {len(third_party)}", color=_WARNING)

    # -- Console ------------------------------------------------------------
    if data.console:
        story.heading("Console Messages")
        errors = sum(1 for c in data.console if c.type == "error")
        warnings = sum(1 for c in data.console if c.type == "warning")
        story.line(f"Total Messages: {len(data.console)}")
        if errors:
            story.line(f"Errors: {errors}", color=_DANGER)
        if warnings:
            story.line(f"Warnings: {warnings}", color=_WARNING)

    # -- TLS certificate ----------------------------------------------------
    tls = page.security_details
    if tls and (tls.protocol or tls.issuer or (tls.valid_from and tls.valid_to)):
        story.heading("SSL/TLS Certificate")
        if tls.protocol:
            story.line(f"Protocol: {tls.protocol}")
        if tls.issuer:
            story.line(f"Issuer: {tls.issuer}")
        if tls.valid_from and tls.valid_to:
            story.line(f"Valid: {_format_validity(tls.valid_from)} to {_format_validity(tls.valid_to)}", size=9)

    # -- Phishing -----------------------------------------------------------
    phishing = result.meta.processors.phishing
    if phishing and phishing.data:
        story.heading("Phishing Indicators", color=_DANGER)
        for indicator in phishing.data:
            story.line(f"WARNING: {indicator}", size=9, color=_DANGER)

    # -- Malicious content --------------------------------------------------
    malicious = stats.malicious
    if malicious and (malicious.requests or malicious.domains):
        story.heading("Malicious Content Detected", color=_DANGER)
        if malicious.requests:
            story.line(f"Malicious Requests: {malicious.requests}", color=_DANGER)
        if malicious.domains:
            story.line(f"Malicious Domains: {malicious.domains}", color=_DANGER)

    # -- Summary ------------------------------------------------------------
    story.heading("Security Summary")
    story.line(
        f"Threat Level: {'HIGH RISK' if overall.malicious else 'LOW RISK'}",
        bold=True,
        color=_DANGER if overall.malicious else _SAFE,
    )
    if result.lists.ips:
        story.line(f"Total IPs Contacted: {len(result.lists.ips)}", size=9)
    if result.lists.asns:
        story.line(f"ASNs Involved: {len(result.lists.asns)}", size=9)
    if result.lists.countries:
        story.line(f"Countries: {', '.join(result.lists.countries)}", size=9)

    footer_date = generated_at.isoformat()

    def _draw_footer(canvas: Any, doc_: Any) -> None:
        canvas.saveState()
        canvas.setFont("Helvetica", 8)
        canvas.setFillColor(colors.HexColor("#808080"))
        canvas.drawString(doc_.leftMargin, 1 * cm, "Generated by RadarScan - Powered by Cloudflare Radar")
        canvas.drawRightString(A4[0] - doc_.rightMargin, 1 * cm, f"Report Date: {footer_date}")
        canvas.restoreState()

    doc.build(story.flowables, onFirstPage=_draw_footer, onLaterPages=_draw_footer)
    return buf.getvalue()


def _format_validity(value: str | int) -> str:
    # The provider reports certificate validity as Unix seconds or as text.
    if isinstance(value, int):
        return datetime.fromtimestamp(value, tz=timezone.utc).strftime("%Y-%m-%d")
    return value


class _Story:
    """Small helper that accumulates escaped ReportLab flowables."""

    def __init__(self, styles: Any) -> None:
        self._styles = styles
        self.flowables: list[Any] = []

    def title(self, text: str) -> None:
        style = ParagraphStyle("RadarTitle", parent=self._styles["Title"], textColor=_BRAND, alignment=0)
        self.flowables.append(Paragraph(escape(text), style))
        self.flowables.append(Spacer(1, 0.3 * cm))

    def heading(self, text: str, color: Any = None) -> None:
        style = self._styles["Heading2"]
        if color is not None:
            style = ParagraphStyle(f"Heading-{text}", parent=style, textColor=color)
        self.flowables.append(Spacer(1, 0.3 * cm))
        self.flowables.append(Paragraph(escape(text), style))

    def line(
        self,
        text: str,
        *,
        size: int = 10,
        bold: bool = False,
        color: Any = None,
        indent: int = 0,
    ) -> None:
        style = ParagraphStyle(
            f"Line-{size}-{bold}-{indent}",
            parent=self._styles["Normal"],
            fontSize=size,
            leading=size + 4,
            fontName="Helvetica-Bold" if bold else "Helvetica",
            textColor=color or colors.black,
            leftIndent=indent,
        )
        self.flowables.append(Paragraph(escape(text), style))

    def table(self, header: list[str], rows: list[tuple[str, str]]) -> None:
        cell = ParagraphStyle("Cell", parent=self._styles["Normal"], fontSize=9, leading=12)
        data: list[list[Any]] = [header]
        data.extend([Paragraph(escape(label), cell), Paragraph(escape(value), cell)] for label, value in rows)
        table = Table(data, colWidths=[6 * cm, 11 * cm])
        table.setStyle(_TABLE_STYLE)
        self.flowables.append(table)
