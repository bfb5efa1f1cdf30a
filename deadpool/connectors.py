from __future__ import annotations

import asyncio
import logging
import os
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Iterable
from urllib.parse import quote

import feedparser
import httpx
from lxml import etree, html as lxml_html

from deadpool.extraction import (
    extract_birth_date, extract_cause, extract_death, extract_death_date, valid_age,
)
from deadpool.models import CandidateDeath, name_key
from deadpool.utils import MONTHS, calculate_age, parse_date

log = logging.getLogger(__name__)

_USER_AGENT = "DeadpoolBot/1.0 (celebrity death tracking)"
_TIMEOUT = float(os.environ.get("DEADPOOL_HTTP_TIMEOUT", "15"))
_MAX_ELEMENT_TEXT = 1_000

TABULAR_URL = os.environ.get(
    "DEADPOOL_TABULAR_URL",
    "https://incendar.com/deathclock-recent-high-profile-media-famous-deaths-in-us-united-states.php",
)
SPARQL_URL = os.environ.get("DEADPOOL_SPARQL_URL", "https://query.wikidata.org/sparql")
WIKI_BASE = "https://en.wikipedia.org"


class SourceUnavailable(Exception):
    """An external source could not be reached or answered with an error."""


@dataclass
class FetchParams:
    """Per-run knobs handed to every connector.

    ``days`` sets a recency window ending at ``today``; ``target_date`` narrows
    a run to one day; ``start_date``/``end_date`` give an explicit range.
    ``names`` feeds the biography lookup.
    """
    days: int | None = None
    target_date: date | None = None
    start_date: date | None = None
    end_date: date | None = None
    game_year: int | None = None
    names: list[str] = field(default_factory=list)
    today: date = field(default_factory=date.today)

    def window(self, default_days: int | None = None) -> tuple[date | None, date]:
        """(first, last) day a candidate may have died on; ``first`` may be open."""
        if self.target_date is not None:
            return self.target_date, self.target_date
        if self.start_date is not None or self.end_date is not None:
            return self.start_date, self.end_date or self.today
        days = self.days if self.days is not None else default_days
        if days is None:
            return None, self.today
        return self.today - timedelta(days=days), self.today

    def in_window(self, day: date, default_days: int | None = None) -> bool:
        first, last = self.window(default_days)
        return (first is None or day >= first) and day <= last

    def target_years(self) -> set[int]:
        if self.game_year is not None:
            return {self.game_year}
        if self.target_date is not None:
            return {self.target_date.year}
        return {self.today.year - 1, self.today.year}


# ---------------------------------------------------------------------------
# HTTP helpers
# ---------------------------------------------------------------------------


async def _fetch_url(url: str, params: dict[str, Any] | None = None) -> str:
    """GET a page as text. Raises SourceUnavailable on network or HTTP errors."""
    try:
        async with httpx.AsyncClient(
            follow_redirects=True,
            timeout=httpx.Timeout(_TIMEOUT),
            headers={"User-Agent": _USER_AGENT},
        ) as client:
            resp = await client.get(url, params=params)
            resp.raise_for_status()
            return resp.text
    except httpx.HTTPError as exc:
        raise SourceUnavailable(f"{url}: {exc}") from exc


async def _api_get(url: str, params: dict[str, Any] | None = None) -> tuple[int, Any]:
    """GET a JSON API. Returns ``(status, data)``; status 0 means the call never landed."""
    try:
        async with httpx.AsyncClient(
            follow_redirects=True,
            timeout=httpx.Timeout(_TIMEOUT),
            headers={"User-Agent": _USER_AGENT, "Accept": "application/json"},
        ) as client:
            resp = await client.get(url, params=params)
            if resp.status_code >= 400:
                return resp.status_code, None
            return resp.status_code, resp.json()
    except (httpx.HTTPError, ValueError) as exc:
        log.debug("API request failed for %s: %s", url, exc)
        return 0, None


def _parse_html(raw_html: str):
    try:
        return lxml_html.fromstring(raw_html)
    except (etree.ParserError, etree.XMLSyntaxError, ValueError):
        return None


def _html_to_text(raw_html: str) -> str:
    tree = _parse_html(raw_html)
    if tree is None:
        return ""
    return " ".join(" ".join(tree.itertext()).split())


def _node_text(element) -> str:
    """Readable text of one element; table rows become comma-separated cells."""
    cells = element.xpath("./td|./th") if element.tag == "tr" else []
    if cells:
        parts = [" ".join(c.text_content().split()) for c in cells]
        return ", ".join(p for p in parts if p)
    return " ".join(element.text_content().split())


# ---------------------------------------------------------------------------
# Connector base
# ---------------------------------------------------------------------------


class Connector:
    """One external source. Subclasses implement :meth:`_fetch`."""

    source_tag = ""
    label = ""

    async def fetch_candidates(self, params: FetchParams) -> list[CandidateDeath]:
        """Candidates from this source; never raises, an unreachable source yields ``[]``."""
        try:
            candidates = await self._fetch(params)
        except SourceUnavailable as exc:
            log.warning("%s source unavailable: %s", self.label, exc)
            return []
        except Exception as exc:
            log.warning("%s connector failed: %s", self.label, exc)
            return []
        log.info("%s connector found %d candidates", self.label, len(candidates))
        return candidates

    async def _fetch(self, params: FetchParams) -> list[CandidateDeath]:
        raise NotImplementedError


# ---------------------------------------------------------------------------
# Tabular page
# ---------------------------------------------------------------------------

# Structural strategies, tried in order until one yields candidates
_TABULAR_SELECTORS: list[tuple[str, str]] = [
    ("rows", "//tr"),
    ("list items", "//li"),
    ("containers", "//*[contains(@class, 'death')] | //p | //div[not(.//div)]"),
]
_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?])\s+|\n+")


class TabularPageConnector(Connector):
    """A single HTML page listing recent deaths in rows, list items or blocks."""

    source_tag = "tabular"
    label = "Tabular page"

    def __init__(self, url: str | None = None):
        self.url = url or TABULAR_URL

    async def _fetch(self, params: FetchParams) -> list[CandidateDeath]:
        raw_html = await _fetch_url(self.url)
        tree = _parse_html(raw_html)
        if tree is None:
            log.debug("Tabular page %s did not parse", self.url)
            return []

        for strategy, xpath in _TABULAR_SELECTORS:
            texts = [_node_text(el) for el in tree.xpath(xpath)]
            found = self._from_texts(texts, params)
            if found:
                log.debug("Tabular page matched via %s (%d candidates)", strategy, len(found))
                return found

        body = "\n".join(t for t in tree.itertext())
        sentences = [s for s in _SENTENCE_SPLIT_RE.split(body) if s.strip()]
        return self._from_texts(sentences, params)

    def _from_texts(self, texts: Iterable[str], params: FetchParams) -> list[CandidateDeath]:
        found: list[CandidateDeath] = []
        for text in texts:
            if not text or len(text) > _MAX_ELEMENT_TEXT:
                continue
            hit = extract_death(text)
            if hit is None:
                continue
            when = hit.date_of_death or params.target_date
            if when is None or not params.in_window(when):
                continue
            found.append(CandidateDeath(
                name=hit.name, date_of_death=when, age=hit.age,
                cause_text=hit.cause_text or extract_cause(text), description=text[:500],
                source_tag=self.source_tag, source_url=self.url,
            ))
        return found


# ---------------------------------------------------------------------------
# Monthly deaths list (encyclopedia "Deaths in <Month> <Year>")
# ---------------------------------------------------------------------------

_NOTABLE_KEYWORDS = (
    "actor", "actress", "musician", "singer", "politician", "author", "artist",
    "athlete", "director", "producer", "writer", "composer", "dancer", "comedian",
    "journalist", "broadcaster", "chef", "designer", "model", "activist",
    "footballer", "player", "rapper", "presenter",
)
_LIST_AGE_RE = re.compile(r",\s*(\d{1,3}),")
_DAY_RE = re.compile(r"\b(\d{1,2})\b")
_REF_MARK_RE = re.compile(r"\[\d+\]")


def _list_cause(description: str) -> str | None:
    """Trailing cause in a list entry ("American actor (Show), cancer."), if any."""
    parts = [p.strip() for p in _REF_MARK_RE.sub("", description).rstrip(" .").split(",")]
    if len(parts) < 2 or not parts[-1]:
        return None
    return parts[-1]


class MonthlyDeathsListConnector(Connector):
    """Per-month list pages where entries sit under day headings."""

    source_tag = "tabular"
    label = "Monthly deaths list"

    def __init__(self, base_url: str = WIKI_BASE, request_delay: float = 1.0):
        self.base_url = base_url.rstrip("/")
        self.request_delay = request_delay

    def months(self, params: FetchParams) -> list[tuple[int, int]]:
        """(year, month) pages to read for this run."""
        first, last = params.window()
        if first is None:
            first = date(last.year - 1, 1, 1)
        months: list[tuple[int, int]] = []
        year, month = first.year, first.month
        while (year, month) <= (last.year, last.month):
            months.append((year, month))
            year, month = (year + 1, 1) if month == 12 else (year, month + 1)
        return months

    def page_url(self, year: int, month: int) -> str:
        return f"{self.base_url}/wiki/Deaths_in_{MONTHS[month - 1]}_{year}"

    async def _fetch(self, params: FetchParams) -> list[CandidateDeath]:
        found: list[CandidateDeath] = []
        for idx, (year, month) in enumerate(self.months(params)):
            if idx and self.request_delay:
                await asyncio.sleep(self.request_delay)
            url = self.page_url(year, month)
            try:
                raw_html = await _fetch_url(url)
            except SourceUnavailable as exc:
                log.warning("Skipping %s: %s", url, exc)
                continue
            found.extend(c for c in self.parse_page(raw_html, year, month, url)
                         if params.in_window(c.date_of_death))
        return found

    def parse_page(self, raw_html: str, year: int, month: int, url: str) -> list[CandidateDeath]:
        tree = _parse_html(raw_html)
        if tree is None:
            return []
        content = tree.xpath("//div[contains(@class, 'mw-parser-output')]")
        root = content[0] if content else tree

        found: list[CandidateDeath] = []
        day: int | None = None
        for el in root.iter("h3", "li"):
            if el.tag == "h3":
                m = _DAY_RE.search(el.text_content())
                day = int(m.group(1)) if m else day
                continue
            if day is None:
                continue
            cand = self._parse_entry(el, year, month, day, url)
            if cand is not None:
                found.append(cand)
        return found

    def _parse_entry(self, li, year: int, month: int, day: int, url: str) -> CandidateDeath | None:
        links = li.xpath(".//a[starts-with(@href, '/wiki/') and not(contains(@href, 'Deaths_in'))]")
        if not links:
            return None
        name = " ".join(links[0].text_content().split())
        if len(name) < 2:
            return None
        text = " ".join(li.text_content().split())
        m = _LIST_AGE_RE.search(text)
        if not m:
            return None
        age = int(m.group(1))
        description = text[m.end():].strip()
        if not valid_age(age) or not any(k in description.lower() for k in _NOTABLE_KEYWORDS):
            return None
        try:
            when = date(year, month, day)
        except ValueError:
            return None
        return CandidateDeath(
            name=name, date_of_death=when, age=age, cause_text=_list_cause(description),
            description=description[:500], source_tag=self.source_tag, source_url=url,
        )


# ---------------------------------------------------------------------------
# RSS / Atom feeds
# ---------------------------------------------------------------------------

_DEATH_WORDS_RE = re.compile(
    r"\b(?:dies|died|dead|obituary|passed\s+away|passes\s+away|funeral)\b", re.IGNORECASE,
)
FEED_DEFAULT_DAYS = 7


class FeedConnector(Connector):
    """News feeds from the configured allow-list."""

    source_tag = "feed"
    label = "Feeds"

    def __init__(self, feeds: list[tuple[str, str]], watermark: date | None = None):
        self.feeds = feeds
        self.watermark = watermark

    async def _fetch(self, params: FetchParams) -> list[CandidateDeath]:
        if not self.feeds:
            return []
        results = await asyncio.gather(
            *(self._fetch_feed(name, url, params) for name, url in self.feeds),
            return_exceptions=True,
        )
        found: list[CandidateDeath] = []
        for (name, url), result in zip(self.feeds, results):
            if isinstance(result, Exception):
                log.warning("Feed %s (%s) failed: %s", name, url, result)
            else:
                found.extend(result)
        return found

    def _cutoff(self, params: FetchParams) -> date | None:
        first, _ = params.window(default_days=FEED_DEFAULT_DAYS)
        if self.watermark and (first is None or self.watermark > first):
            return self.watermark
        return first

    async def _fetch_feed(self, name: str, url: str, params: FetchParams) -> list[CandidateDeath]:
        raw = await _fetch_url(url)
        parsed = feedparser.parse(raw)
        if parsed.bozo and not parsed.entries:
            log.warning("Feed %s is not parseable: %s", name, parsed.get("bozo_exception"))
            return []
        cutoff = self._cutoff(params)
        found: list[CandidateDeath] = []
        for entry in parsed.entries:
            cand = self._parse_entry(entry, url, cutoff, params.today)
            if cand is not None:
                found.append(cand)
        return found

    def _parse_entry(self, entry, feed_url: str, cutoff: date | None, today: date) -> CandidateDeath | None:
        title = " ".join((entry.get("title") or "").split())
        body = _html_to_text(entry.get("summary") or "") if entry.get("summary") else ""
        text = f"{title}. {body}".strip(" .")
        if not _DEATH_WORDS_RE.search(text):
            return None

        published = _entry_date(entry)
        if published is not None and cutoff is not None and published < cutoff:
            return None

        hit = extract_death(title) or extract_death(text)
        if hit is None:
            return None
        when = hit.date_of_death or published
        if when is None or when > today or (cutoff is not None and when < cutoff):
            return None
        return CandidateDeath(
            name=hit.name, date_of_death=when, age=hit.age,
            cause_text=hit.cause_text or extract_cause(text), description=text[:500],
            source_tag=self.source_tag, source_url=entry.get("link") or feed_url,
        )


def _entry_date(entry) -> date | None:
    for key in ("published_parsed", "updated_parsed"):
        value = entry.get(key)
        if value:
            return datetime(*value[:6]).date()
    return parse_date(entry.get("published") or entry.get("updated"))


# ---------------------------------------------------------------------------
# Structured query endpoint
# ---------------------------------------------------------------------------

STRUCTURED_QUERY = """\
SELECT ?person ?personLabel ?personDescription ?dob ?dod ?causeLabel ?links WHERE {{
  ?person wdt:P31 wd:Q5;
          wdt:P570 ?dod;
          wikibase:sitelinks ?links.
  OPTIONAL {{ ?person wdt:P569 ?dob. }}
  OPTIONAL {{ ?person wdt:P509 ?cause. }}
  FILTER(?dod >= "{start}T00:00:00Z"^^xsd:dateTime && ?dod < "{end}T00:00:00Z"^^xsd:dateTime)
  FILTER(?links >= {min_links})
  SERVICE wikibase:label {{ bd:serviceParam wikibase:language "en". }}
}}
ORDER BY DESC(?links)
LIMIT {limit}"""

_ENTITY_ID_RE = re.compile(r"^Q\d+$")


def _binding(row: dict, key: str) -> str | None:
    value = (row.get(key) or {}).get("value")
    return value.strip() if isinstance(value, str) and value.strip() else None


class StructuredQueryConnector(Connector):
    """Persons with a recorded death date in the window, from a SPARQL endpoint."""

    source_tag = "structured"
    label = "Structured query"

    def __init__(self, endpoint: str | None = None, min_sitelinks: int = 10, limit: int = 200):
        self.endpoint = endpoint or SPARQL_URL
        self.min_sitelinks = min_sitelinks
        self.limit = limit

    def build_query(self, params: FetchParams) -> str:
        first, last = params.window(default_days=1)
        first = first or last
        return STRUCTURED_QUERY.format(
            start=first.isoformat(), end=(last + timedelta(days=1)).isoformat(),
            min_links=self.min_sitelinks, limit=self.limit,
        )

    async def _fetch(self, params: FetchParams) -> list[CandidateDeath]:
        status, data = await _api_get(self.endpoint, {"query": self.build_query(params), "format": "json"})
        if status != 200 or not isinstance(data, dict):
            raise SourceUnavailable(f"{self.endpoint} answered {status}")
        rows = (data.get("results") or {}).get("bindings") or []
        found: list[CandidateDeath] = []
        for row in rows:
            cand = self._parse_row(row)
            if cand is not None and params.in_window(cand.date_of_death, default_days=1):
                found.append(cand)
        return found

    def _parse_row(self, row: dict) -> CandidateDeath | None:
        name = _binding(row, "personLabel")
        dod = parse_date(_binding(row, "dod"))
        if not name or _ENTITY_ID_RE.match(name) or dod is None:
            return None
        dob = parse_date(_binding(row, "dob"))
        age = calculate_age(dob, dod) if dob else None
        return CandidateDeath(
            name=name, date_of_death=dod, date_of_birth=dob, age=age,
            cause_text=_binding(row, "causeLabel"),
            description=_binding(row, "personDescription") or "",
            source_tag=self.source_tag, source_url=_binding(row, "person") or self.endpoint,
        )


# ---------------------------------------------------------------------------
# Biography lookup
# ---------------------------------------------------------------------------

PROFESSION_QUALIFIERS = ("actor", "actress", "singer", "musician", "politician", "athlete", "author")
_PAREN_RE = re.compile(r"\s*\([^)]*\)")
_QUOTED_RE = re.compile(r"[\"“”']([^\"“”']{2,40})[\"“”']")


def search_variants(name: str) -> list[str]:
    """Lookup titles for a player-entered name, loosest last."""
    name = " ".join(name.split())
    variants = [name]
    base = " ".join(_PAREN_RE.sub("", name).split())
    variants.append(base)
    alias = _QUOTED_RE.search(base)
    if alias:
        variants.append(alias.group(1).strip())
        base = " ".join(_QUOTED_RE.sub(" ", base).split())
        variants.append(base)
    variants.append(base.title())
    tokens = base.split()
    if len(tokens) > 2:
        variants.append(" ".join(tokens[:2]))
    variants.extend(f"{base} ({q})" for q in PROFESSION_QUALIFIERS)

    seen: set[str] = set()
    ordered: list[str] = []
    for v in variants:
        if v and v.lower() not in seen:
            seen.add(v.lower())
            ordered.append(v)
    return ordered


def confirms_recent_death(text: str, years: set[int]) -> bool:
    """Death language tied to one of *years*, not just any date on the page."""
    if not years:
        return False
    year_alt = "|".join(str(y) for y in sorted(years))
    patterns = [
        rf"\b(?:died|death)\b[^.]{{0,60}}?\b(?:{year_alt})\b",
        rf"[–\-]\s*[A-Za-z0-9 ,]{{0,20}}\b(?:{year_alt})\)",
    ]
    return any(re.search(p, text, re.IGNORECASE) for p in patterns)


class BiographyConnector(Connector):
    """Look up individual people (from open predictions) on an encyclopedia."""

    source_tag = "biography"
    label = "Biography lookup"

    def __init__(self, base_url: str = WIKI_BASE, request_delay: float = 1.0):
        self.base_url = base_url.rstrip("/")
        self.request_delay = request_delay

    async def _fetch(self, params: FetchParams) -> list[CandidateDeath]:
        years = params.target_years()
        found: list[CandidateDeath] = []
        for idx, name in enumerate(params.names):
            if idx and self.request_delay:
                await asyncio.sleep(self.request_delay)
            try:
                cand = await self.lookup(name, years)
            except SourceUnavailable as exc:
                log.warning("Biography lookup for %s failed: %s", name, exc)
                continue
            if cand is not None:
                found.append(cand)
        return found

    async def _summary(self, title: str) -> dict | None:
        status, data = await _api_get(f"{self.base_url}/api/rest_v1/page/summary/{quote(title, safe='')}")
        if status == 0:
            raise SourceUnavailable(f"summary lookup for {title!r} did not complete")
        if status != 200 or not isinstance(data, dict) or data.get("type") == "disambiguation":
            return None
        return data

    async def _search_title(self, name: str) -> str | None:
        status, data = await _api_get(f"{self.base_url}/w/api.php", {
            "action": "opensearch", "search": name, "limit": 1, "namespace": 0, "format": "json",
        })
        if status == 200 and isinstance(data, list) and len(data) > 1 and data[1]:
            return data[1][0]
        return None

    async def _lead_text(self, title: str) -> str:
        status, data = await _api_get(f"{self.base_url}/w/api.php", {
            "action": "parse", "page": title, "prop": "text", "section": 0, "format": "json",
        })
        if status != 200 or not isinstance(data, dict):
            return ""
        raw = ((data.get("parse") or {}).get("text") or {}).get("*") or ""
        return _html_to_text(raw)

    async def find_page(self, name: str) -> dict | None:
        for variant in search_variants(name):
            summary = await self._summary(variant)
            if summary is not None:
                return summary
        title = await self._search_title(name)
        return await self._summary(title) if title else None

    async def lookup(self, name: str, years: set[int]) -> CandidateDeath | None:
        summary = await self.find_page(name)
        if summary is None:
            log.debug("No biography page for %s", name)
            return None
        title = summary.get("title") or name
        extract = summary.get("extract") or ""
        text = f"{extract} {await self._lead_text(title)}".strip()

        if not confirms_recent_death(text, years):
            log.debug("%s: no death in %s on page %r", name, sorted(years), title)
            return None
        dod = extract_death_date(text)
        if dod is None or dod.year not in years:
            return None
        dob = extract_birth_date(text)
        age = calculate_age(dob, dod) if dob else None
        page_name = " ".join(_PAREN_RE.sub("", title).split())
        # Prefer the page spelling unless it names the pick differently
        canonical = page_name if name_key(page_name) == name_key(name) else name
        return CandidateDeath(
            name=canonical, date_of_death=dod, date_of_birth=dob, age=age,
            cause_text=extract_cause(text), description=extract.split(". ")[0][:500],
            source_tag=self.source_tag, confirmed=True,
            source_url=f"{self.base_url}/wiki/{quote(title.replace(' ', '_'))}",
        )
