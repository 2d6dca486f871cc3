"""
域名访问控制模块

根据请求的 Referer / Origin 判断来源域名，并查询域名策略决定是否放行。

注意：这里采用 fail-open 策略。无法确定来源、没有策略记录、
或者策略存储本身出错时都放行请求，只有明确标记为 blocked 的域名才会被拒绝。
这是有意的业务取舍：不能因为客户端请求头不可控或基础设施抖动而拦截正常流量。
"""

import queue
import logging
import threading
from dataclasses import dataclass
from typing import Optional, Dict, Any, Protocol
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

DIRECT_REFERRER = "direct"
BLOCKED_STATUS = "blocked"


class PolicyStore(Protocol):
    """域名策略存储接口"""

    def find_policy(self, domain: str) -> Optional[Dict[str, Any]]:
        """返回 {"id", "status", "reason"} 或 None"""


@dataclass(frozen=True)
class AccessDecision:
    """域名访问判定结果"""

    allowed: bool
    record_id: Optional[str]
    reason: str
    domain: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "recordId": self.record_id,
            "reason": self.reason,
            "domain": self.domain,
        }


def extract_domain(referrer: Optional[str], origin: Optional[str] = None) -> Optional[str]:
    """从 Referer（回退 Origin）中提取规范化域名

    Args:
        referrer: Referer 请求头
        origin: Origin 请求头

    Returns:
        去掉 www. 前缀的小写主机名，无法确定时返回 None
    """
    url_string = referrer or origin
    if not url_string:
        return None
    url_string = url_string.strip()
    if not url_string or url_string == DIRECT_REFERRER:
        return None

    try:
        hostname = urlparse(url_string).hostname
    except ValueError:
        return None

    if not hostname:
        return None

    if hostname.startswith("www."):
        hostname = hostname[4:]

    return hostname or None


class DomainAccessGate:
    """域名访问检查

    只依赖注入的策略存储，不持有全局状态，可在多线程中共享。
    """

    def __init__(self, policy_store: PolicyStore):
        self.policy_store = policy_store

    def check_access(self, referrer: Optional[str], origin: Optional[str] = None) -> AccessDecision:
        """检查请求来源是否允许访问

        Args:
            referrer: Referer 请求头
            origin: Origin 请求头

        Returns:
            AccessDecision
        """
        domain = extract_domain(referrer, origin)
        if domain is None:
            return AccessDecision(True, None, "no-origin", None)

        try:
            policy = self.policy_store.find_policy(domain)
        except Exception as e:  # pylint: disable=broad-except
            # fail-open：策略存储出错时放行
            logger.warning("Domain policy lookup failed for %s, allowing: %s", domain, e)
            return AccessDecision(True, None, "policy-lookup-failed", domain)

        if not policy:
            return AccessDecision(True, None, "no-policy", domain)

        record_id = policy.get("id")
        if policy.get("status") == BLOCKED_STATUS:
            reason = policy.get("reason") or "Domain is blocked"
            logger.info("Blocked request from domain %s (record %s)", domain, record_id)
            return AccessDecision(False, record_id, reason, domain)

        return AccessDecision(True, record_id, "policy-allowed", domain)


class RequestLogWriter:
    """异步 API 请求日志写入器

    请求线程只负责把日志放进队列，由后台线程写入数据库；
    队列满时直接丢弃，绝不阻塞请求。
    """

    def __init__(self, db, max_queue_size: int = 1000):
        """初始化日志写入器

        Args:
            db: 提供 log_api_request(entry) 的存储
            max_queue_size: 队列上限
        """
        self.db = db
        self._queue: "queue.Queue[Optional[Dict[str, Any]]]" = queue.Queue(maxsize=max_queue_size)
        self.dropped = 0
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    def start(self):
        """启动写入线程"""
        with self._lock:
            if self._thread is None or not self._thread.is_alive():
                self._thread = threading.Thread(
                    target=self._write_loop,
                    daemon=True,
                    name="RequestLogWriter"
                )
                self._thread.start()

    def submit(self, entry: Dict[str, Any]) -> bool:
        """提交一条日志（非阻塞）

        Returns:
            是否成功入队
        """
        try:
            self._queue.put_nowait(entry)
            return True
        except queue.Full:
            self.dropped += 1
            return False

    def flush(self):
        """等待队列中已有日志全部写完"""
        if self._thread is None or not self._thread.is_alive():
            self._drain()
            return
        self._queue.join()

    def stop(self, timeout: float = 5):
        """写完剩余日志并停止线程"""
        if self._thread and self._thread.is_alive():
            self._queue.put(None)
            self._thread.join(timeout=timeout)
        self._thread = None

    def _drain(self):
        while True:
            try:
                entry = self._queue.get_nowait()
            except queue.Empty:
                return
            try:
                if entry is not None:
                    self._write(entry)
            finally:
                self._queue.task_done()

    def _write_loop(self):
        """写入循环"""
        while True:
            entry = self._queue.get()
            try:
                if entry is None:
                    return
                self._write(entry)
            finally:
                self._queue.task_done()

    def _write(self, entry: Dict[str, Any]):
        try:
            self.db.log_api_request(entry)
        except Exception as e:  # pylint: disable=broad-except
            logger.error("Error logging API request: %s", e)


__all__ = [
    "AccessDecision",
    "DomainAccessGate",
    "PolicyStore",
    "RequestLogWriter",
    "extract_domain",
]
