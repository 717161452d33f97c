"""Tests for the catalog scraper, with the browser replaced by canned pages."""

import pytest

from conftest import FakeBrowser
from nursery_import.config import Settings
from nursery_import.ingest.browser import PageSnapshot
from nursery_import.ingest.errors import PageLoadError
from nursery_import.ingest.rate_limiter import UpstreamGate
from nursery_import.ingest.scraper import CatalogScraper, login_succeeded
from nursery_import.ingest.session_manager import SessionManager

BASE = "https://www.plantmark.com.au"
LISTING = f"{BASE}/plant-finder"


def listing_html(ids, total=None):
    items = "".join(
        f'<div class="product-item" data-productid="{i}"><a href="/trees/plant-{i}">Plant {i}</a>'
        f'<span class="price">$10.00 ex GST</span></div>'
        for i in ids
    )
    summary = f"<p>Showing 1-{len(ids)} of {total} results</p>" if total else ""
    return f"<html><body><h1>Trees</h1>{items}{summary}</body></html>"


def make_config(**overrides):
    values = dict(
        source_base_url=BASE,
        source_username="",
        source_password="",
        listing_page_size=2,
        listing_settle_seconds=0,
        detail_settle_seconds=0,
        login_settle_seconds=0,
    )
    values.update(overrides)
    return Settings(**values)


def make_scraper(browser, tmp_path, **overrides):
    return CatalogScraper(
        browser=browser,
        gate=UpstreamGate(min_interval=0),
        sessions=SessionManager(tmp_path),
        config=make_config(**overrides),
    )


class TestLoginSucceeded:
    def test_left_login_page_with_marker(self):
        assert login_succeeded(f"{BASE}/customer/info", "Hello Jo. Log out", [], "/login", ["log out"], [])

    def test_still_on_login_page(self):
        assert not login_succeeded(f"{BASE}/login?returnUrl=%2F", "Log out", [".Nop.Authentication"], "/login", ["log out"], ["auth"])

    def test_login_path_matches_exactly(self):
        assert not login_succeeded(f"{BASE}/Login/", "Log out", [], "/login", ["log out"], [])
        for path in ("/login-help", "/account/loginsuccess"):
            assert login_succeeded(f"{BASE}{path}", "Hello Jo. Log out", [], "/login", ["log out"], [])

    def test_auth_cookie_is_enough(self):
        assert login_succeeded(f"{BASE}/", "Welcome", [".Nop.Authentication"], "/login", ["log out"], [".nop.authentication"])

    def test_no_signal(self):
        assert not login_succeeded(f"{BASE}/", "Welcome", ["session"], "/login", ["log out"], ["auth"])


@pytest.mark.asyncio
async def test_paginates_using_total_results(tmp_path):
    browser = FakeBrowser({
        LISTING: listing_html(["1", "2"], total=3),
        f"{LISTING}#/page=2": listing_html(["3"]),
    })
    scraper = make_scraper(browser, tmp_path)

    first = await scraper.list_products(1)
    assert [p.id for p in first.products] == ["1", "2"]
    assert all(p.category == "Trees" for p in first.products)
    assert first.has_more
    assert first.session.total_results == 3

    second = await scraper.list_products(2, None, first.session)
    assert [p.id for p in second.products] == ["3"]
    assert not second.has_more
    assert second.session.pages_seen == 2


@pytest.mark.asyncio
async def test_next_control_used_without_total(tmp_path):
    html = listing_html(["1"]).replace("</body>", '<a rel="next" href="#/page=2">Next</a></body>')
    scraper = make_scraper(FakeBrowser({LISTING: html}), tmp_path)

    page = await scraper.list_products(1)
    assert page.has_more


@pytest.mark.asyncio
async def test_anonymous_without_credentials(tmp_path):
    browser = FakeBrowser({LISTING: listing_html(["1"])})
    scraper = make_scraper(browser, tmp_path)

    await scraper.list_products(1)
    assert browser.started
    assert browser.login_attempts == 0
    assert not scraper.authenticated


@pytest.mark.asyncio
async def test_login_success_saves_cookies(tmp_path):
    browser = FakeBrowser(
        {LISTING: listing_html(["1"])},
        login_result=PageSnapshot(url=f"{BASE}/customer/info", html="", text="My account | Log out"),
        cookies=[{"name": ".Nop.Authentication", "value": "abc", "domain": "www.plantmark.com.au", "path": "/"}],
    )
    sessions = SessionManager(tmp_path)
    scraper = CatalogScraper(
        browser=browser,
        gate=UpstreamGate(min_interval=0),
        sessions=sessions,
        config=make_config(source_username="trade@example.com", source_password="secret"),
    )

    await scraper.initialize()
    assert scraper.authenticated
    assert (tmp_path / "plantmark_cookies.json").exists()
    assert SessionManager(tmp_path).load_cookies("plantmark")[0]["name"] == ".Nop.Authentication"


@pytest.mark.asyncio
async def test_rejected_login_is_not_fatal(tmp_path):
    browser = FakeBrowser(
        {LISTING: listing_html(["1"])},
        login_result=PageSnapshot(url=f"{BASE}/login", html="", text="Login was unsuccessful"),
    )
    scraper = make_scraper(browser, tmp_path, source_username="u", source_password="p")

    page = await scraper.list_products(1)
    assert browser.login_attempts == 1
    assert not scraper.authenticated
    assert [p.id for p in page.products] == ["1"]


@pytest.mark.asyncio
async def test_login_page_failure_is_not_fatal(tmp_path):
    browser = FakeBrowser({LISTING: listing_html(["1"])}, login_result=None)
    scraper = make_scraper(browser, tmp_path, source_username="u", source_password="p")

    await scraper.initialize()
    assert not scraper.authenticated


@pytest.mark.asyncio
async def test_listing_navigation_error_propagates(tmp_path):
    scraper = make_scraper(FakeBrowser({}), tmp_path)
    with pytest.raises(PageLoadError):
        await scraper.list_products(1)


@pytest.mark.asyncio
async def test_detail_page(tmp_path):
    detail = (
        "<html><head><title>Plant 1 | Plantmark</title></head><body>"
        '<ul class="breadcrumb"><li><a>Home</a></li><li><a>Trees</a></li></ul>'
        '<h1>Plant 1</h1><div data-product-id="1"></div></body></html>'
    )
    browser = FakeBrowser({f"{BASE}/trees/plant-1": detail, f"{BASE}/about-us": "<html><body><p>About</p></body></html>"})
    scraper = make_scraper(browser, tmp_path)

    product = await scraper.scrape_product_detail("/trees/plant-1")
    assert product.id == "1"
    assert product.category == "Trees"
    assert product.source_url == f"{BASE}/trees/plant-1"

    assert await scraper.scrape_product_detail(f"{BASE}/about-us") is None


@pytest.mark.asyncio
async def test_close_releases_browser(tmp_path):
    browser = FakeBrowser({LISTING: listing_html(["1"])})
    scraper = make_scraper(browser, tmp_path)
    await scraper.list_products(1)
    await scraper.close()
    assert browser.closed


@pytest.mark.asyncio
async def test_navigation_is_serialized_through_gate(tmp_path):
    gate = UpstreamGate(min_interval=0)
    browser = FakeBrowser({LISTING: listing_html(["1"]), f"{BASE}/trees/plant-1": "<h1>Plant 1</h1>"})
    scraper = CatalogScraper(browser=browser, gate=gate, sessions=SessionManager(tmp_path), config=make_config())

    await scraper.list_products(1)
    await scraper.scrape_product_detail("/trees/plant-1")
    assert gate.total_requests == 2
    assert gate.max_in_flight == 1
