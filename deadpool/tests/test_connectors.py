"""Tests for the source connectors.

HTTP is stubbed at the module helpers (``_fetch_url`` / ``_api_get``) so no
test touches the network.
"""
from __future__ import annotations

from datetime import date
from unittest.mock import AsyncMock, patch
from urllib.parse import unquote

import pytest

from deadpool.connectors import (
    BiographyConnector,
    FeedConnector,
    FetchParams,
    MonthlyDeathsListConnector,
    SourceUnavailable,
    StructuredQueryConnector,
    TabularPageConnector,
    confirms_recent_death,
    search_variants,
)

TODAY = date(2025, 3, 10)

TABLE_PAGE = """
<html><body>
<h1>Recent deaths</h1>
<table>
  <tr><th>Name</th><th>Age</th><th>Died</th></tr>
  <tr><td>John Smith</td><td>82</td><td>died March 3, 2025</td></tr>
  <tr><td>Mary Jones</td><td>91</td><td>died March 5, 2025 of heart failure</td></tr>
  <tr><td>Old News</td><td>70</td><td>died January 2, 2020</td></tr>
</table>
</body></html>
"""

LIST_PAGE = """
<html><body><ul>
  <li>Ann Example, 84, died March 2, 2025</li>
  <li>Nothing to see here</li>
</ul></body></html>
"""

MONTH_PAGE = """
<html><body><div class="mw-parser-output">
<ul><li><a href="/wiki/Deaths_in_February_2025">February</a></li></ul>
<div class="mw-heading mw-heading3"><h3>1</h3></div>
<ul>
  <li><a href="/wiki/Jane_Doe">Jane Doe</a>, 82, American actress (<i>Some Film</i>), cancer.<sup><a href="#c1">[1]</a></sup></li>
  <li><a href="/wiki/Bob_Roe">Bob Roe</a>, 70, Canadian farmer.</li>
</ul>
<div class="mw-heading mw-heading3"><h3>2</h3></div>
<ul>
  <li><a href="/wiki/Max_Power">Max Power</a>, 55, British singer, heart attack.</li>
</ul>
</div></body></html>
"""

RSS = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0"><channel>
<title>Famous deaths</title>
<item>
  <title>Mary Jones dies at 91</title>
  <link>https://news.example/mary-jones</link>
  <description>The actress died of heart failure at her home.</description>
  <pubDate>Mon, 03 Mar 2025 10:00:00 GMT</pubDate>
</item>
<item>
  <title>Stock markets rally</title>
  <link>https://news.example/markets</link>
  <description>Shares rose.</description>
  <pubDate>Mon, 03 Mar 2025 11:00:00 GMT</pubDate>
</item>
<item>
  <title>Peter Oldman dies at 80</title>
  <link>https://news.example/peter</link>
  <pubDate>Mon, 06 Jan 2025 10:00:00 GMT</pubDate>
</item>
</channel></rss>
"""


# ---------------------------------------------------------------------------
# FetchParams
# ---------------------------------------------------------------------------


class TestFetchParams:
    def test_window_from_days(self):
        params = FetchParams(days=7, today=TODAY)
        assert params.window() == (date(2025, 3, 3), TODAY)
        assert params.in_window(date(2025, 3, 3))
        assert not params.in_window(date(2025, 3, 2))

    def test_target_date_narrows_to_one_day(self):
        params = FetchParams(target_date=date(2025, 3, 1), days=30, today=TODAY)
        assert params.window() == (date(2025, 3, 1), date(2025, 3, 1))

    def test_open_window_without_params(self):
        params = FetchParams(today=TODAY)
        assert params.window() == (None, TODAY)
        assert params.in_window(date(1999, 1, 1))

    def test_target_years(self):
        assert FetchParams(today=TODAY).target_years() == {2024, 2025}
        assert FetchParams(game_year=2025, today=TODAY).target_years() == {2025}


# ---------------------------------------------------------------------------
# Base behaviour
# ---------------------------------------------------------------------------


class TestConnectorErrors:
    @pytest.mark.asyncio
    async def test_unavailable_source_yields_empty(self):
        with patch("deadpool.connectors._fetch_url", new_callable=AsyncMock,
                   side_effect=SourceUnavailable("timeout")):
            result = await TabularPageConnector("https://x.test").fetch_candidates(FetchParams(today=TODAY))
        assert result == []

    @pytest.mark.asyncio
    async def test_unexpected_error_yields_empty(self):
        with patch("deadpool.connectors._fetch_url", new_callable=AsyncMock,
                   side_effect=RuntimeError("boom")):
            result = await TabularPageConnector("https://x.test").fetch_candidates(FetchParams(today=TODAY))
        assert result == []

    @pytest.mark.asyncio
    async def test_unparseable_page_yields_empty(self):
        with patch("deadpool.connectors._fetch_url", new_callable=AsyncMock, return_value=""):
            result = await TabularPageConnector("https://x.test").fetch_candidates(FetchParams(today=TODAY))
        assert result == []


# ---------------------------------------------------------------------------
# Tabular page
# ---------------------------------------------------------------------------


class TestTabularPage:
    @pytest.mark.asyncio
    async def test_table_rows(self):
        with patch("deadpool.connectors._fetch_url", new_callable=AsyncMock, return_value=TABLE_PAGE):
            result = await TabularPageConnector("https://x.test").fetch_candidates(
                FetchParams(days=30, today=TODAY))
        names = {c.name: c for c in result}
        assert set(names) == {"John Smith", "Mary Jones"}
        assert names["John Smith"].age == 82
        assert names["John Smith"].date_of_death == date(2025, 3, 3)
        assert names["Mary Jones"].source_tag == "tabular"
        assert names["Mary Jones"].source_url == "https://x.test"

    @pytest.mark.asyncio
    async def test_falls_back_to_list_items(self):
        with patch("deadpool.connectors._fetch_url", new_callable=AsyncMock, return_value=LIST_PAGE):
            result = await TabularPageConnector("https://x.test").fetch_candidates(FetchParams(today=TODAY))
        assert [(c.name, c.age) for c in result] == [("Ann Example", 84)]

    @pytest.mark.asyncio
    async def test_undated_rows_need_target_date(self):
        page = "<table><tr><td>Ann Example</td><td>84</td><td>died peacefully</td></tr></table>"
        with patch("deadpool.connectors._fetch_url", new_callable=AsyncMock, return_value=page):
            connector = TabularPageConnector("https://x.test")
            assert await connector.fetch_candidates(FetchParams(today=TODAY)) == []
            result = await connector.fetch_candidates(FetchParams(target_date=date(2025, 3, 4), today=TODAY))
        assert result[0].date_of_death == date(2025, 3, 4)

    @pytest.mark.asyncio
    async def test_row_without_cause_phrase_has_no_cause(self):
        page = "<table><tr><td>Jimmy Fallon</td><td>50</td><td>died March 5, 2025</td></tr></table>"
        with patch("deadpool.connectors._fetch_url", new_callable=AsyncMock, return_value=page):
            result = await TabularPageConnector("https://x.test").fetch_candidates(
                FetchParams(days=30, today=TODAY))
        assert result[0].name == "Jimmy Fallon"
        assert result[0].cause_text is None


# ---------------------------------------------------------------------------
# Monthly list pages
# ---------------------------------------------------------------------------


class TestMonthlyList:
    def test_months_for_target_date(self):
        connector = MonthlyDeathsListConnector()
        assert connector.months(FetchParams(target_date=date(2025, 3, 4), today=TODAY)) == [(2025, 3)]

    def test_default_months_cover_last_year_and_this_year(self):
        months = MonthlyDeathsListConnector().months(FetchParams(today=TODAY))
        assert months[0] == (2024, 1)
        assert months[-1] == (2025, 3)
        assert len(months) == 15

    def test_page_url(self):
        assert MonthlyDeathsListConnector().page_url(2025, 3).endswith("/wiki/Deaths_in_March_2025")

    def test_parse_page_uses_day_headings_and_occupations(self):
        result = MonthlyDeathsListConnector().parse_page(MONTH_PAGE, 2025, 3, "https://w.test")
        assert [(c.name, c.age, c.date_of_death) for c in result] == [
            ("Jane Doe", 82, date(2025, 3, 1)),
            ("Max Power", 55, date(2025, 3, 2)),
        ]
        assert result[0].cause_text == "cancer"
        assert result[1].cause_text == "heart attack"

    @pytest.mark.asyncio
    async def test_fetch_skips_unavailable_months(self):
        connector = MonthlyDeathsListConnector(request_delay=0)
        params = FetchParams(start_date=date(2025, 2, 1), end_date=date(2025, 3, 10), today=TODAY)
        with patch("deadpool.connectors._fetch_url", new_callable=AsyncMock,
                   side_effect=[SourceUnavailable("404"), MONTH_PAGE]) as fetch:
            result = await connector.fetch_candidates(params)
        assert fetch.await_count == 2
        assert len(result) == 2


# ---------------------------------------------------------------------------
# Feeds
# ---------------------------------------------------------------------------


class TestFeeds:
    @pytest.mark.asyncio
    async def test_death_items_within_window(self):
        connector = FeedConnector([("Deaths", "https://feed.test/rss")])
        with patch("deadpool.connectors._fetch_url", new_callable=AsyncMock, return_value=RSS):
            result = await connector.fetch_candidates(FetchParams(days=7, today=TODAY))
        assert len(result) == 1
        cand = result[0]
        assert (cand.name, cand.age) == ("Mary Jones", 91)
        assert cand.date_of_death == date(2025, 3, 3)
        assert cand.source_tag == "feed"
        assert cand.source_url == "https://news.example/mary-jones"
        assert cand.cause_text == "heart failure at her home"

    @pytest.mark.asyncio
    async def test_watermark_cuts_older_items(self):
        connector = FeedConnector([("Deaths", "https://feed.test/rss")], watermark=date(2025, 3, 4))
        with patch("deadpool.connectors._fetch_url", new_callable=AsyncMock, return_value=RSS):
            result = await connector.fetch_candidates(FetchParams(today=TODAY))
        assert result == []

    @pytest.mark.asyncio
    async def test_one_bad_feed_does_not_hide_others(self):
        connector = FeedConnector([("Bad", "https://bad.test"), ("Good", "https://feed.test/rss")])

        async def fake_fetch(url, params=None):
            if "bad" in url:
                raise SourceUnavailable("503")
            return RSS

        with patch("deadpool.connectors._fetch_url", side_effect=fake_fetch):
            result = await connector.fetch_candidates(FetchParams(days=7, today=TODAY))
        assert [c.name for c in result] == ["Mary Jones"]

    @pytest.mark.asyncio
    async def test_no_feeds_configured(self):
        assert await FeedConnector([]).fetch_candidates(FetchParams(today=TODAY)) == []

    @pytest.mark.asyncio
    async def test_body_without_cause_phrase_has_no_cause(self):
        rss = RSS.replace("The actress died of heart failure at her home.", "She broke fans' hearts.")
        connector = FeedConnector([("Deaths", "https://feed.test/rss")])
        with patch("deadpool.connectors._fetch_url", new_callable=AsyncMock, return_value=rss):
            result = await connector.fetch_candidates(FetchParams(days=7, today=TODAY))
        assert result[0].cause_text is None


# ---------------------------------------------------------------------------
# Structured query
# ---------------------------------------------------------------------------


def _row(label, dod, dob=None, cause=None, desc=None, uri="http://www.wikidata.org/entity/Q1"):
    row = {"person": {"value": uri}, "personLabel": {"value": label}, "dod": {"value": dod}}
    if dob:
        row["dob"] = {"value": dob}
    if cause:
        row["causeLabel"] = {"value": cause}
    if desc:
        row["personDescription"] = {"value": desc}
    return row


class TestStructuredQuery:
    def test_query_covers_the_day(self):
        query = StructuredQueryConnector().build_query(FetchParams(target_date=date(2025, 3, 2), today=TODAY))
        assert '"2025-03-02T00:00:00Z"' in query
        assert '"2025-03-03T00:00:00Z"' in query
        assert "wdt:P570" in query

    @pytest.mark.asyncio
    async def test_rows_become_candidates(self):
        data = {"results": {"bindings": [
            _row("Ann Example", "2025-03-02T00:00:00Z", dob="1940-05-01T00:00:00Z",
                 cause="pancreatic cancer", desc="American actress"),
            _row("Q98765", "2025-03-02T00:00:00Z"),
            _row("No Date", ""),
        ]}}
        with patch("deadpool.connectors._api_get", new_callable=AsyncMock, return_value=(200, data)):
            result = await StructuredQueryConnector().fetch_candidates(
                FetchParams(target_date=date(2025, 3, 2), today=TODAY))
        assert len(result) == 1
        cand = result[0]
        assert cand.name == "Ann Example"
        assert cand.age == 84
        assert cand.date_of_birth == date(1940, 5, 1)
        assert cand.cause_text == "pancreatic cancer"
        assert cand.description == "American actress"
        assert cand.source_tag == "structured"

    @pytest.mark.asyncio
    async def test_endpoint_error_yields_empty(self):
        with patch("deadpool.connectors._api_get", new_callable=AsyncMock, return_value=(503, None)):
            result = await StructuredQueryConnector().fetch_candidates(FetchParams(today=TODAY))
        assert result == []


# ---------------------------------------------------------------------------
# Biography lookup
# ---------------------------------------------------------------------------

PAGES = {
    "Ann Example": {
        "type": "standard", "title": "Ann Example",
        "extract": "Ann Example (May 1, 1940 – March 2, 2025) was an American actress. "
                   "She died of pancreatic cancer.",
    },
    "Bob Living": {
        "type": "standard", "title": "Bob Living",
        "extract": "Bob Living (born June 1, 1950) is an American actor.",
    },
    "Old Timer": {
        "type": "standard", "title": "Old Timer",
        "extract": "Old Timer (May 1, 1900 – March 2, 1990) was a British singer.",
    },
    "Prince (musician)": {
        "type": "standard", "title": "Prince (musician)",
        "extract": "Prince (June 7, 1958 – April 21, 2016) was an American musician.",
    },
    "Smokey": {
        "type": "standard", "title": "William Robinson",
        "extract": "William Robinson (February 19, 1940 – March 1, 2025) was an American singer.",
    },
}


async def _fake_api(url, params=None):
    if "/page/summary/" in url:
        page = PAGES.get(unquote(url.rsplit("/", 1)[-1]))
        return (200, page) if page else (404, None)
    if params and params.get("action") == "parse":
        return 200, {"parse": {"text": {"*": "<p>Lead paragraph.</p>"}}}
    if params and params.get("action") == "opensearch":
        return 200, [params["search"], [], [], []]
    return 404, None


class TestBiography:
    def test_search_variants(self):
        variants = search_variants('Dwayne "The Rock" Johnson')
        assert variants[:3] == ['Dwayne "The Rock" Johnson', "The Rock", "Dwayne Johnson"]
        assert "Dwayne Johnson (actor)" in variants

    def test_search_variants_strip_parentheticals_and_middle_names(self):
        variants = search_variants("John Ronald Smith (writer)")
        assert variants[1] == "John Ronald Smith"
        assert "John Ronald" in variants
        assert len(variants) == len({v.lower() for v in variants})

    def test_confirms_recent_death(self):
        text = PAGES["Ann Example"]["extract"]
        assert confirms_recent_death(text, {2025})
        assert not confirms_recent_death(text, {2023})
        assert not confirms_recent_death(PAGES["Bob Living"]["extract"], {2025})

    @pytest.mark.asyncio
    async def test_confirmed_death_uses_page_spelling(self):
        connector = BiographyConnector(request_delay=0)
        params = FetchParams(names=["ann example", "Bob Living", "Old Timer", "Nobody Known"],
                             game_year=2025, today=TODAY)
        with patch("deadpool.connectors._api_get", side_effect=_fake_api):
            result = await connector.fetch_candidates(params)
        assert len(result) == 1
        cand = result[0]
        assert cand.name == "Ann Example"
        assert cand.date_of_death == date(2025, 3, 2)
        assert cand.date_of_birth == date(1940, 5, 1)
        assert cand.age == 84
        assert cand.cause_text == "pancreatic cancer"
        assert cand.confirmed is True
        assert cand.source_tag == "biography"
        assert cand.source_url.endswith("/wiki/Ann_Example")

    @pytest.mark.asyncio
    async def test_qualified_title_found(self):
        connector = BiographyConnector(request_delay=0)
        with patch("deadpool.connectors._api_get", side_effect=_fake_api):
            page = await connector.find_page("Prince")
        assert page["title"] == "Prince (musician)"

    @pytest.mark.asyncio
    async def test_qualifier_stripped_from_record_name(self):
        connector = BiographyConnector(request_delay=0)
        with patch("deadpool.connectors._api_get", side_effect=_fake_api):
            cand = await connector.lookup("Prince", {2016})
        assert cand.name == "Prince"
        assert cand.source_url.endswith("/wiki/Prince_%28musician%29")

    @pytest.mark.asyncio
    async def test_page_for_another_name_keeps_pick_name(self):
        connector = BiographyConnector(request_delay=0)
        with patch("deadpool.connectors._api_get", side_effect=_fake_api):
            cand = await connector.lookup("Smokey", {2025})
        assert cand.name == "Smokey"

    @pytest.mark.asyncio
    async def test_lookup_failure_skips_name(self):
        connector = BiographyConnector(request_delay=0)
        with patch("deadpool.connectors._api_get", new_callable=AsyncMock, return_value=(0, None)):
            result = await connector.fetch_candidates(FetchParams(names=["Ann Example"], today=TODAY))
        assert result == []
