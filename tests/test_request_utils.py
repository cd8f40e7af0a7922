import pytest

from wordlink_app.queue.models import ClickMessage
from wordlink_app.services.enrichment import DefaultVisitEnricher, VisitEnricher, looks_like_bot
from wordlink_app.utils.request_utils import (
    classify_referrer,
    derive_visitor_id,
    extract_utm_params,
    get_client_ip,
    referrer_source,
)


class TestReferrers:
    @pytest.mark.parametrize("referrer, expected", [
        (None, "direct"),
        ("", "direct"),
        ("https://www.google.com/search?q=x", "search"),
        ("https://duckduckgo.com/", "search"),
        ("https://t.co/abc", "social"),
        ("https://m.facebook.com/", "social"),
        ("https://www.linkedin.com/feed", "social"),
        ("https://www.microsoft.com/", "other"),
        ("https://news.ycombinator.com/", "other"),
    ])
    def test_classify(self, referrer, expected):
        assert classify_referrer(referrer) == expected

    def test_source_strips_www(self):
        assert referrer_source("https://www.example.com/a/b") == "example.com"

    def test_source_without_scheme(self):
        assert referrer_source("android-app://com.slack") == "com.slack"
        assert referrer_source("not a url") == "not a url"


class TestVisitorId:
    def test_stable_and_short(self):
        first = derive_visitor_id("203.0.113.7", "UA", "en-US", "salt")
        assert first == derive_visitor_id("203.0.113.7", "UA", "en-US", "salt")
        assert len(first) == 16

    def test_depends_on_salt_and_ip(self):
        base = derive_visitor_id("203.0.113.7", "UA", None, "salt")
        assert base != derive_visitor_id("203.0.113.8", "UA", None, "salt")
        assert base != derive_visitor_id("203.0.113.7", "UA", None, "other-salt")

    def test_ip_not_recoverable(self):
        assert "203.0.113.7" not in derive_visitor_id("203.0.113.7", "UA", None, "salt")


class TestClientIp:
    """Forwarding headers only count behind a trusted proxy"""

    def test_forwarded_for_behind_trusted_proxy(self):
        headers = {"x-forwarded-for": "198.51.100.1, 10.0.0.1"}
        assert get_client_ip(headers, "10.0.0.2", ["10.0.0.0/8"]) == "198.51.100.1"

    def test_untrusted_peer_ignores_forwarding_headers(self):
        headers = {"x-forwarded-for": "198.51.100.1", "x-real-ip": "198.51.100.9"}
        assert get_client_ip(headers, "203.0.113.50") == "203.0.113.50"
        assert get_client_ip(headers, "203.0.113.50", ["10.0.0.0/8"]) == "203.0.113.50"

    def test_spoofed_leading_hop_is_skipped(self):
        # The client sent "X-Forwarded-For: 1.2.3.4"; the proxy appended the real address
        headers = {"x-forwarded-for": "1.2.3.4, 198.51.100.7"}
        assert get_client_ip(headers, "10.0.0.2", ["10.0.0.2"]) == "198.51.100.7"

    def test_chain_of_trusted_proxies(self):
        headers = {"x-forwarded-for": "198.51.100.7, 10.1.0.1, 10.2.0.1"}
        assert get_client_ip(headers, "10.0.0.2", ["10.0.0.0/8"]) == "198.51.100.7"

    def test_trust_any(self):
        headers = {"x-forwarded-for": "198.51.100.1, 10.0.0.1"}
        assert get_client_ip(headers, "10.0.0.2", ["*"]) == "198.51.100.1"

    def test_real_ip_then_fallback(self):
        assert get_client_ip({"x-real-ip": "198.51.100.9"}, "10.0.0.2", ["10.0.0.2"]) == "198.51.100.9"
        assert get_client_ip({}, "10.0.0.2", ["10.0.0.2"]) == "10.0.0.2"

    def test_no_peer(self):
        assert get_client_ip({"x-forwarded-for": "198.51.100.1"}, None, ["*"]) is None


def test_extract_utm_params():
    params = extract_utm_params({"utm_source": "mail", "utm_campaign": "", "q": "x"})
    assert params["utm_source"] == "mail"
    assert params["utm_campaign"] is None
    assert "q" not in params


class TestEnrichment:
    """Default edge-header enricher"""

    def make_message(self, **fields):
        return ClickMessage(link_id=1, visitor_id="v", **fields)

    def test_country_and_device_hints(self):
        visit = DefaultVisitEnricher().enrich(self.make_message(
            user_agent="Mozilla/5.0", country_hint="gb", mobile_hint=False,
        ))
        assert visit.country_code == "GB"
        assert visit.device_type == "desktop"
        assert visit.is_bot is False

    def test_unknown_country_ignored(self):
        visit = DefaultVisitEnricher().enrich(self.make_message(user_agent="Mozilla/5.0", country_hint="XX"))
        assert visit.country_code is None

    @pytest.mark.parametrize("user_agent", [
        "Googlebot/2.1 (+http://www.google.com/bot.html)",
        "facebookexternalhit/1.1",
        None,
    ])
    def test_bots(self, user_agent):
        assert looks_like_bot(user_agent) is True

    def test_broken_classifier_falls_back(self):
        class Broken(VisitEnricher):
            def classify(self, message):
                raise RuntimeError("geo database missing")

        visit = Broken().enrich(self.make_message(referrer="https://t.co/x", response_time_ms=3))
        assert visit.visitor_id == "v"
        assert visit.country_code is None
        assert visit.response_time_ms == 3
