"""
Local user-agent classification.

An ordered table of (pattern, reason) pairs is scanned once against the
lower-cased user-agent; the first hit wins and supplies the reason. No scoring,
no combination of hits. Pure and total: never raises, never does I/O.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

USER_AGENT_MAX_LENGTH = 512
MISSING_AGENT_PLACEHOLDER = "-"


@dataclass(frozen=True)
class BotDetection:
    is_bot: bool
    reason: Optional[str]
    user_agent: Optional[str]  # normalized (trimmed, truncated) or None

    def as_dict(self) -> dict:
        return {"is_bot": self.is_bot, "reason": self.reason, "user_agent": self.user_agent}


def _sig(pattern: str, reason: str) -> Tuple[re.Pattern, str]:
    return re.compile(pattern), reason


# Order matters: specific crawlers first, generic keywords and client
# libraries last.
BOT_SIGNATURES: Tuple[Tuple[re.Pattern, str], ...] = (
    # search engines
    _sig(r"googlebot", "Googlebot agent"),
    _sig(r"bingbot", "Bingbot agent"),
    _sig(r"duckduckbot", "DuckDuckBot agent"),
    _sig(r"baiduspider", "Baidu agent"),
    _sig(r"yandex(bot|images|video)", "Yandex agent"),
    _sig(r"ahrefsbot", "Ahrefs agent"),
    _sig(r"semrushbot", "Semrush agent"),
    _sig(r"mj12bot", "MJ12 agent"),
    _sig(r"dotbot", "DotBot agent"),
    # social / messaging previews
    _sig(r"pinterestbot", "Pinterest agent"),
    _sig(r"linkedinbot", "LinkedIn agent"),
    _sig(r"slackbot", "Slack agent"),
    _sig(r"discordbot", "Discord agent"),
    _sig(r"telegrambot", "Telegram agent"),
    _sig(r"twitterbot", "Twitter agent"),
    _sig(r"petalbot", "PetalBot agent"),
    _sig(r"bytespider", "ByteSpider agent"),
    _sig(r"qwant(bot|ify)", "Qwant agent"),
    _sig(r"seznambot", "Seznam agent"),
    _sig(r"sogou", "Sogou agent"),
    _sig(r"exabot", "ExaBot agent"),
    _sig(r"megaindex", "MegaIndex agent"),
    _sig(r"roger(bot|seo)", "RogerBot agent"),
    # AI training crawlers
    _sig(r"gptbot", "GPTBot agent"),
    _sig(r"claudebot", "ClaudeBot agent"),
    _sig(r"anthropic-ai", "Anthropic agent"),
    _sig(r"whatsapp", "WhatsApp agent"),
    _sig(r"applebot", "Applebot agent"),
    _sig(r"facebookexternalhit", "Facebook agent"),
    _sig(r"facebot", "Facebook agent"),
    _sig(r"ia_archiver", "Alexa agent"),
    # audits / headless browsers
    _sig(r"lighthouse", "Lighthouse agent"),
    _sig(r"headlesschrome", "Headless browser"),
    _sig(r"phantomjs", "PhantomJS browser"),
    _sig(r"rendertron", "Rendertron agent"),
    _sig(r"google page speed insights", "PageSpeed Insights"),
    # generic keywords
    _sig(r"bot\b", "Keyword: bot"),
    _sig(r"crawler", "Keyword: crawler"),
    _sig(r"spider", "Keyword: spider"),
    _sig(r"scrap(er|ing)", "Keyword: scraper"),
    _sig(r"scanner", "Keyword: scanner"),
    _sig(r"validator", "Keyword: validator"),
    _sig(r"preview", "Keyword: preview"),
    _sig(r"monitor", "Keyword: monitor"),
    # uptime / monitoring services
    _sig(r"uptimerobot", "UptimeRobot service"),
    _sig(r"statuscake", "StatusCake service"),
    _sig(r"pingdom", "Pingdom service"),
    _sig(r"datadog", "Datadog service"),
    _sig(r"newrelic", "NewRelic service"),
    # scripting / HTTP client libraries
    _sig(r"python-requests", "python-requests library"),
    _sig(r"httpx/", "httpx client"),
    _sig(r"aiohttp", "aiohttp client"),
    _sig(r"httpclient", "Generic HTTP client"),
    _sig(r"libwww-perl", "libwww-perl client"),
    _sig(r"curl/", "curl client"),
    _sig(r"wget/", "wget client"),
    _sig(r"okhttp", "OkHttp client"),
    _sig(r"java/", "Java client"),
    _sig(r"go-http-client", "Go client"),
    _sig(r"node-fetch", "node-fetch client"),
    _sig(r"axios/", "axios client"),
    _sig(r"guzzlehttp", "Guzzle client"),
    _sig(r"postmanruntime", "Postman client"),
)


def normalize_user_agent(user_agent, max_length: int = USER_AGENT_MAX_LENGTH) -> Optional[str]:
    if not isinstance(user_agent, str):
        return None
    trimmed = user_agent.strip()
    if not trimmed:
        return None
    return trimmed[:max_length]


class BotSignatureMatcher:
    def __init__(
        self,
        signatures: Sequence[Tuple[re.Pattern, str]] = BOT_SIGNATURES,
        max_length: int = USER_AGENT_MAX_LENGTH,
    ):
        self.signatures = tuple(signatures)
        self.max_length = max_length

    def normalize(self, user_agent) -> Optional[str]:
        return normalize_user_agent(user_agent, self.max_length)

    def classify(self, user_agent) -> BotDetection:
        normalized = self.normalize(user_agent)
        if normalized is None:
            return BotDetection(False, None, None)
        lower = normalized.lower()
        if lower == MISSING_AGENT_PLACEHOLDER:
            return BotDetection(True, "Missing user-agent (-)", normalized)
        for pattern, reason in self.signatures:
            if pattern.search(lower):
                return BotDetection(True, reason, normalized)
        return BotDetection(False, None, normalized)


_default_matcher = BotSignatureMatcher()


def classify_user_agent(user_agent) -> BotDetection:
    return _default_matcher.classify(user_agent)


def is_likely_bot(user_agent) -> bool:
    return _default_matcher.classify(user_agent).is_bot
