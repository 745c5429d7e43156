"""Network tools: fetch (httpx) and search (DuckDuckGo via ddgs).

Every request is gated twice: the run's domain allowlist first, then an SSRF
check that rejects private, loopback and reserved targets.
"""

import asyncio
import ipaddress
import logging
import socket
from urllib.parse import urlparse

import httpx
from ddgs import DDGS

from motor_cortex.models import ToolResult
from motor_cortex.tools.args import FetchArgs, SearchArgs
from motor_cortex.tools.context import FetchResponse, SearchHit, ToolContext

logger = logging.getLogger(__name__)

MAX_REDIRECTS = 5
USER_AGENT = "motor-cortex/0.1"
_BLOCKED_HOSTNAMES = {"localhost", "localhost.localdomain", "metadata.google.internal"}
_BLOCKED_PORTS = {22, 23, 25, 135, 137, 138, 139, 445, 3306, 5432, 6379, 11211, 27017}


class BlockedUrlError(Exception):
    """Raised when a URL (or a redirect hop) fails the safety checks."""


def host_matches(host: str, allowed_domains: list[str] | None) -> bool:
    """True if host equals an allowed domain or is a subdomain of one."""
    if not allowed_domains:
        return False
    host = host.lower().rstrip(".")
    for domain in allowed_domains:
        d = domain.lower().strip()
        if not d:
            continue
        if d.startswith("."):
            if host == d[1:] or host.endswith(d):
                return True
        elif host == d or host.endswith("." + d):
            return True
    return False


def domain_matches(url: str, allowed_domains: list[str] | None) -> bool:
    """Return True if url's host is in allowed_domains, or if allowed_domains is empty/None."""
    if not allowed_domains:
        return True
    host = urlparse(url).hostname or ""
    return bool(host) and host_matches(host, allowed_domains)


def blocked_domain_result(host: str, allowed_domains: list[str] | None) -> ToolResult:
    """Result the loop recognizes to auto-pause with an access question."""
    if allowed_domains:
        detail = f"is not in the allowed list. Allowed domains: {', '.join(allowed_domains)}."
    else:
        detail = "is not allowed: network access was not granted for this run."
    return ToolResult.failure(
        "permission_denied",
        f"BLOCKED: Domain {host} {detail} Call ask_user to request access.",
    )


def _is_private_ip(value: str) -> bool:
    try:
        ip = ipaddress.ip_address(value.strip("[]"))
    except ValueError:
        return False
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped:
        ip = ip.ipv4_mapped
    return (
        ip.is_private
        or ip.is_loopback
        or ip.is_link_local
        or ip.is_multicast
        or ip.is_reserved
        or ip.is_unspecified
    )


def validate_url(url: str) -> str:
    """Check scheme, host and port. Returns the lowercased host; raises BlockedUrlError."""
    parsed = urlparse(url.strip())
    if parsed.scheme not in ("http", "https"):
        raise BlockedUrlError(
            f"Protocol not allowed: {parsed.scheme or '(none)'}. Only http and https are permitted."
        )
    if parsed.username or parsed.password:
        raise BlockedUrlError("URL must not embed credentials; use headers instead.")
    host = (parsed.hostname or "").lower()
    if not host:
        raise BlockedUrlError("URL must have a hostname.")
    if host in _BLOCKED_HOSTNAMES or _is_private_ip(host):
        raise BlockedUrlError("URL points to a private or reserved address.")
    if "." not in host and ":" not in host:
        raise BlockedUrlError("URL hostname appears to be an internal address.")
    try:
        port = parsed.port
    except ValueError:
        raise BlockedUrlError("Invalid port in URL.") from None
    if port in _BLOCKED_PORTS:
        raise BlockedUrlError(f"Port {port} is blocked.")
    return host


async def _check_resolved(host: str) -> None:
    """Reject hosts whose DNS answers point at private addresses."""
    if _is_private_ip(host):
        raise BlockedUrlError("URL points to a private or reserved address.")
    loop = asyncio.get_running_loop()
    try:
        infos = await loop.getaddrinfo(host, None, type=socket.SOCK_STREAM)
    except socket.gaierror as e:
        raise BlockedUrlError(f"Could not resolve host {host}: {e}") from None
    for info in infos:
        if _is_private_ip(str(info[4][0])):
            raise BlockedUrlError(f"Host {host} resolves to a private address.")


async def http_fetch(
    url: str,
    *,
    method: str = "GET",
    headers: dict[str, str] | None = None,
    body: str | None = None,
    timeout: float = 30.0,
    allowed_domains: list[str] | None = None,
) -> FetchResponse:
    """Default fetch callback. Each redirect hop is re-validated before it is sent."""

    async def _guard(request: httpx.Request) -> None:
        host = validate_url(str(request.url))
        if allowed_domains and not host_matches(host, allowed_domains):
            raise BlockedUrlError(f"Redirect to {host} is outside the allowed domains.")
        await _check_resolved(host)

    request_headers = {"User-Agent": USER_AGENT, **(headers or {})}
    async with httpx.AsyncClient(
        timeout=timeout,
        follow_redirects=True,
        max_redirects=MAX_REDIRECTS,
        event_hooks={"request": [_guard]},
    ) as client:
        response = await client.request(
            method, url, headers=request_headers, content=body.encode("utf-8") if body else None
        )
    return FetchResponse(
        url=str(response.url),
        status=response.status_code,
        content_type=response.headers.get("content-type", ""),
        text=response.text,
    )


def _search_sync(query: str, *, max_results: int = 10) -> list[dict]:
    """Synchronous search wrapper for asyncio.to_thread."""
    return list(DDGS().text(query, max_results=max_results))


async def ddg_search(query: str, *, limit: int = 5) -> list[SearchHit]:
    """Default search callback (DuckDuckGo)."""
    raw = await asyncio.to_thread(_search_sync, query, max_results=limit)
    return [
        SearchHit(title=item.get("title") or "", url=item.get("href") or "", snippet=item.get("body") or "")
        for item in raw
    ]


async def fetch_tool(args: FetchArgs, ctx: ToolContext) -> ToolResult:
    try:
        host = validate_url(args.url)
    except BlockedUrlError as e:
        return ToolResult.failure("invalid_args", str(e))
    if not host_matches(host, ctx.allowed_domains):
        return blocked_domain_result(host, ctx.allowed_domains)

    fetch_fn = ctx.fetch_fn
    try:
        if fetch_fn is None:
            response = await http_fetch(
                args.url,
                method=args.method,
                headers=args.headers,
                body=args.body,
                timeout=ctx.limits.fetch_timeout_sec,
                allowed_domains=ctx.allowed_domains,
            )
        else:
            response = await fetch_fn(
                args.url,
                method=args.method,
                headers=args.headers,
                body=args.body,
                timeout=ctx.limits.fetch_timeout_sec,
            )
    except BlockedUrlError as e:
        return ToolResult.failure("permission_denied", str(e), provenance="web")
    except httpx.TimeoutException:
        return ToolResult.failure(
            "timeout", f"Request to {host} timed out", retryable=True, provenance="web"
        )
    except httpx.HTTPError as e:
        logger.warning("fetch: request to %s failed: %s", host, e)
        return ToolResult.failure(
            "execution_error", f"Request failed: {e}", retryable=True, provenance="web"
        )

    text = response.text
    limit = ctx.limits.max_fetch_chars
    if len(text) > limit:
        text = text[:limit] + f"\n\n[... truncated at {limit} of {len(response.text)} chars ...]"
    header = f"HTTP {response.status} {response.url}"
    if response.content_type:
        header += f" ({response.content_type})"
    output = f"{header}\n\n{text}"

    if response.status in (401, 403):
        return ToolResult.failure("auth_failed", output, provenance="web")
    if response.status == 404:
        return ToolResult.failure("not_found", output, provenance="web")
    if response.status >= 400:
        return ToolResult.failure(
            "execution_error", output, retryable=response.status >= 500, provenance="web"
        )
    return ToolResult.success(output, provenance="web")


async def search_tool(args: SearchArgs, ctx: ToolContext) -> ToolResult:
    search_fn = ctx.search_fn or ddg_search
    # Over-fetch when filtering so the allowlist still leaves enough hits.
    want = args.limit * 2 if ctx.allowed_domains else args.limit
    try:
        hits = await search_fn(args.query, limit=want)
    except Exception as e:
        logger.warning("search: query %r failed: %s", args.query, e)
        return ToolResult.failure(
            "execution_error", f"Search failed: {e}", retryable=True, provenance="web"
        )

    kept = [h for h in hits if domain_matches(h.url, ctx.allowed_domains)][: args.limit]
    if not kept:
        note = " within the allowed domains" if ctx.allowed_domains else ""
        return ToolResult.success(f"No results for {args.query!r}{note}.", provenance="web")
    lines = []
    for n, hit in enumerate(kept, 1):
        lines.append(f"{n}. {hit.title}\n   {hit.url}\n   {hit.snippet}".rstrip())
    return ToolResult.success("\n".join(lines), provenance="web")
