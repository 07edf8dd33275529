"""Pydantic schemas for Cloudflare Radar URL Scanner results.

The provider's report is treated as a loosely specified schema: every
sub-object is optional, missing lists default to empty, and unknown fields are
preserved (``extra="allow"``) so that provider additions never break parsing.
Field names are snake_case in Python and accept the provider's camelCase keys.

Usage::

    from radarscan.schemas.scan_result import ScanResult

    result = ScanResult.model_validate(response.json()["result"])
    if result.verdicts.overall.malicious:
        ...
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _ProviderModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
        frozen=True,
    )


class ScanTask(_ProviderModel):
    uuid: str = ""
    url: str = ""
    time: str = ""
    visibility: str = ""
    method: str | None = None
    user_agent: str | None = None


class SecurityDetails(_ProviderModel):
    protocol: str | None = None
    issuer: str | None = None
    valid_from: str | int | None = None
    valid_to: str | int | None = None


class PageInfo(_ProviderModel):
    url: str = ""
    domain: str = ""
    country: str = ""
    ip: str = ""
    asn: str = ""
    status: str | int = ""
    title: str | None = None
    server: str | None = None
    security_details: SecurityDetails | None = None


class OverallVerdict(_ProviderModel):
    malicious: bool = False
    categories: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    score: float | None = None


class Verdicts(_ProviderModel):
    overall: OverallVerdict = Field(default_factory=OverallVerdict)


class RequestEntry(_ProviderModel):
    url: str = ""
    type: str | None = None
    status: int | None = None
    method: str | None = None


class CookieEntry(_ProviderModel):
    name: str = ""
    domain: str | None = None
    secure: bool = False
    http_only: bool = False
    same_site: str | None = None


class ConsoleEntry(_ProviderModel):
    type: str = ""
    message: str = ""


class LinkEntry(_ProviderModel):
    href: str = ""
    text: str | None = None


class ScanData(_ProviderModel):
    requests: list[RequestEntry] = Field(default_factory=list)
    cookies: list[CookieEntry] = Field(default_factory=list)
    console: list[ConsoleEntry] = Field(default_factory=list)
    links: list[LinkEntry] = Field(default_factory=list)


class ScanLists(_ProviderModel):
    domains: list[str] = Field(default_factory=list)
    ips: list[str] = Field(default_factory=list)
    asns: list[str] = Field(default_factory=list)
    countries: list[str] = Field(default_factory=list)
    urls: list[str] = Field(default_factory=list)
    certificates: list[str] = Field(default_factory=list)


class MaliciousStats(_ProviderModel):
    requests: int | None = None
    domains: int | None = None


class ScanStats(_ProviderModel):
    data_length: int = 0
    uniq_ips: int = Field(default=0, alias="uniqIPs")
    uniq_countries: int = 0
    secure_requests: int | None = None
    ipv6_percentage: float | None = Field(default=None, alias="IPv6Percentage")
    ad_blocked: int | None = None
    malicious: MaliciousStats | None = None


class TechnologyCategory(_ProviderModel):
    name: str = ""


class Technology(_ProviderModel):
    app: str = ""
    categories: list[TechnologyCategory] = Field(default_factory=list)
    confidence_total: int | float = 0
    version: str | None = None


class WappaProcessor(_ProviderModel):
    data: list[Technology] = Field(default_factory=list)


class PhishingProcessor(_ProviderModel):
    data: list[str] = Field(default_factory=list)


class RankProcessor(_ProviderModel):
    bucket: str | None = None
    name: str | None = None


class Processors(_ProviderModel):
    wappa: WappaProcessor | None = None
    phishing: PhishingProcessor | None = None
    rank: RankProcessor | None = None


class ScanMeta(_ProviderModel):
    processors: Processors = Field(default_factory=Processors)


class ScanResult(_ProviderModel):
    """Complete provider report for one scan.

    Only ``task`` and ``page`` are expected in every report; all other
    sections default to empty values when the provider omits them.
    """

    task: ScanTask = Field(default_factory=ScanTask)
    page: PageInfo = Field(default_factory=PageInfo)
    verdicts: Verdicts = Field(default_factory=Verdicts)
    data: ScanData = Field(default_factory=ScanData)
    lists: ScanLists = Field(default_factory=ScanLists)
    stats: ScanStats = Field(default_factory=ScanStats)
    meta: ScanMeta = Field(default_factory=ScanMeta)


class Submission(_ProviderModel):
    """Provider response to a scan submission."""

    job_id: str = Field(alias="uuid")
    result_url: str | None = Field(default=None, alias="result")
    api_url: str | None = Field(default=None, alias="api")
    visibility: str | None = None
    url: str | None = None
