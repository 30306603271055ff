"""
点击欺诈启发式评分

纯计算，不做 IO：速度计数与 IP 信誉由应用层采集后传入。
分值为 0-100 的整数，各项权重可配置。
"""
from __future__ import annotations

import ipaddress
import re
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence
from urllib.parse import urlparse

from .entity import ClickContext, FraudScore, FraudType, IpReputation


MAX_SCORE = 100

BOT_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"bot", r"crawler", r"spider", r"scraper", r"curl", r"wget",
        r"python", r"java/", r"go-http", r"okhttp", r"apache-httpclient",
        r"httpclient", r"libwww", r"^node-fetch", r"axios",
    )
]
HEADLESS_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (r"headlesschrome", r"phantomjs", r"selenium", r"webdriver", r"puppeteer", r"playwright")
]
SHORT_UA_LENGTH = 20


@dataclass(frozen=True)
class FraudWeights:
    velocity_base: int = 30
    velocity_per_extra_click: int = 10
    velocity_cap: int = 60
    ua_missing: int = 40
    ua_bot: int = 50
    ua_headless: int = 45
    ua_short: int = 10
    ua_no_mozilla: int = 15
    ua_cap: int = 60
    ip_abusive: int = 30
    ip_datacenter: int = 20
    ip_proxy: int = 15
    ip_private: int = 10
    referrer_malformed: int = 10
    referrer_mismatch: int = 5
    # remote abuse confidence at or above this counts as abusive
    abuse_confidence_threshold: int = 50


class FraudScorer:

    def __init__(
        self,
        weights: Optional[FraudWeights] = None,
        *,
        velocity_max_clicks: int = 5,
        datacenter_networks: Iterable[str] = (),
        allowed_referrer_hosts: Iterable[str] = (),
    ) -> None:
        self.weights = weights or FraudWeights()
        self.velocity_max_clicks = velocity_max_clicks
        self._datacenter_networks = [ipaddress.ip_network(n, strict=False) for n in datacenter_networks]
        self._allowed_hosts = tuple(h.lower().lstrip(".") for h in allowed_referrer_hosts if h)

    def score(
        self,
        context: ClickContext,
        *,
        click_count: Optional[int] = None,
        reputation: Optional[IpReputation] = None,
    ) -> FraudScore:
        """汇总各项启发式；click_count / reputation 为 None 表示该信号不可用"""
        result = FraudScore()
        if click_count is not None:
            self._score_velocity(result, click_count)
        self._score_user_agent(result, context.user_agent)
        self._score_ip(result, context.ip_address, reputation)
        self._score_referrer(result, context.referrer_url)
        result.points = min(result.points, MAX_SCORE)
        return result

    def _score_velocity(self, result: FraudScore, click_count: int) -> None:
        w = self.weights
        excess = click_count - self.velocity_max_clicks
        if excess <= 0:
            return
        points = min(w.velocity_base + w.velocity_per_extra_click * excess, w.velocity_cap)
        result.add(FraudType.CLICK_VELOCITY, points, clicks_in_window=click_count)

    def _score_user_agent(self, result: FraudScore, user_agent: Optional[str]) -> None:
        w = self.weights
        ua = (user_agent or "").strip()
        if not ua:
            result.add(FraudType.BOT_TRAFFIC, min(w.ua_missing, w.ua_cap), user_agent="missing")
            return

        points = 0
        reasons: list[str] = []
        if any(p.search(ua) for p in BOT_PATTERNS):
            points += w.ua_bot
            reasons.append("bot_signature")
        if any(p.search(ua) for p in HEADLESS_PATTERNS):
            points += w.ua_headless
            reasons.append("headless")
        if len(ua) < SHORT_UA_LENGTH:
            points += w.ua_short
            reasons.append("short")
        if "mozilla" not in ua.lower():
            points += w.ua_no_mozilla
            reasons.append("no_mozilla")
        if points:
            result.add(FraudType.BOT_TRAFFIC, min(points, w.ua_cap), user_agent=reasons)

    def _score_ip(self, result: FraudScore, ip: Optional[str], reputation: Optional[IpReputation]) -> None:
        w = self.weights
        points = 0
        reasons: list[str] = []
        addr = _parse_ip(ip)
        if addr is not None:
            if addr.is_private or addr.is_loopback or addr.is_reserved or addr.is_link_local:
                points += w.ip_private
                reasons.append("private")
            elif any(addr in net for net in self._datacenter_networks):
                points += w.ip_datacenter
                reasons.append("datacenter_range")

        if reputation is not None:
            if reputation.abuse_confidence >= w.abuse_confidence_threshold:
                points += w.ip_abusive
                reasons.append("abusive")
            if reputation.is_datacenter and "datacenter_range" not in reasons:
                points += w.ip_datacenter
                reasons.append("datacenter")
            if reputation.is_proxy or reputation.is_tor:
                points += w.ip_proxy
                reasons.append("proxy")
        if points:
            result.add(FraudType.IP_ABUSE, points, ip=reasons)

    def _score_referrer(self, result: FraudScore, referrer_url: Optional[str]) -> None:
        if not referrer_url:
            return
        w = self.weights
        try:
            parsed = urlparse(referrer_url)
        except ValueError:
            parsed = None
        if parsed is None or parsed.scheme not in ("http", "https") or not parsed.hostname:
            result.add(FraudType.SUSPICIOUS_REFERRER, w.referrer_malformed, referrer="malformed")
            return
        if self._allowed_hosts and not _host_allowed(parsed.hostname.lower(), self._allowed_hosts):
            result.add(FraudType.SUSPICIOUS_REFERRER, w.referrer_mismatch, referrer="host_mismatch")


def _parse_ip(ip: Optional[str]):
    if not ip:
        return None
    try:
        return ipaddress.ip_address(ip.strip())
    except ValueError:
        return None


def _host_allowed(host: str, allowed: Sequence[str]) -> bool:
    return any(host == a or host.endswith("." + a) for a in allowed)
