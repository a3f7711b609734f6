from iptrust.security.bot_signatures import (
    BOT_SIGNATURES,
    BotSignatureMatcher,
    classify_user_agent,
    is_likely_bot,
)

CHROME = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)
FIREFOX = "Mozilla/5.0 (X11; Linux x86_64; rv:125.0) Gecko/20100101 Firefox/125.0"


def test_curl_is_a_bot():
    d = classify_user_agent("curl/8.0.1")
    assert d.is_bot is True
    assert "curl" in d.reason.lower()
    assert d.user_agent == "curl/8.0.1"


def test_desktop_browsers_are_not_bots():
    for ua in (CHROME, FIREFOX):
        d = classify_user_agent(ua)
        assert d.is_bot is False
        assert d.reason is None


def test_dash_placeholder_is_a_bot():
    d = classify_user_agent("-")
    assert d.is_bot is True
    assert d.reason == "Missing user-agent (-)"


def test_missing_or_blank_agent_is_inert():
    for ua in (None, "", "   ", 42):
        d = classify_user_agent(ua)
        assert d.is_bot is False
        assert d.user_agent is None


def test_long_agent_truncated_to_512_prefix():
    ua = "Mozilla/5.0 " + "x" * 1000
    d = classify_user_agent(ua)
    assert len(d.user_agent) == 512
    assert ua.startswith(d.user_agent)


def test_first_match_wins():
    # googlebot comes before the generic "bot" keyword
    d = classify_user_agent("Mozilla/5.0 (compatible; Googlebot/2.1; +http://www.google.com/bot.html)")
    assert d.reason == "Googlebot agent"


def test_generic_keywords():
    assert classify_user_agent("SuperCrawler 1.0").reason == "Keyword: crawler"
    assert classify_user_agent("my-spider").reason == "Keyword: spider"
    assert is_likely_bot("GPTBot/1.1") is True


def test_custom_table_and_length():
    import re

    m = BotSignatureMatcher([(re.compile(r"acme"), "Acme probe")], max_length=8)
    d = m.classify("  ACME-probe/1.0  ")
    assert d.is_bot and d.reason == "Acme probe"
    assert d.user_agent == "ACME-pro"
    assert m.classify("curl/8.0").is_bot is False


def test_table_is_ordered_tuple():
    assert isinstance(BOT_SIGNATURES, tuple)
    reasons = [r for _, r in BOT_SIGNATURES]
    assert reasons.index("Googlebot agent") < reasons.index("Keyword: bot")
