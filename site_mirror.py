#!/usr/bin/env python3
import argparse
import dataclasses
import enum
import html
import logging
import os
import random
import re
import shutil
import sys
import threading
import time
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from http.cookiejar import MozillaCookieJar
from io import BytesIO
from pathlib import Path
from typing import Callable, Deque, Dict, Iterable, List, Optional, Set, Tuple, Union
from urllib.parse import quote, unquote, urldefrag, urljoin, urlparse, urlunparse

import requests
from bs4 import BeautifulSoup
from bs4.element import Tag
from requests.adapters import HTTPAdapter

# -------------------- Config --------------------

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/124.0.0.0 Safari/537.36"
)

DEFAULT_HEADERS = {
    "User-Agent": DEFAULT_USER_AGENT,
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,"
    "image/avif,image/webp,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
    "Cache-Control": "no-cache",
}

CSS_URL_RE = re.compile(r"url\(([^)]+)\)", re.IGNORECASE)
SITEMAP_LOC_RE = re.compile(r"<loc>\s*([^<]+?)\s*</loc>", re.IGNORECASE)
HAS_EXT_RE = re.compile(r"\.[a-z0-9]+$", re.IGNORECASE)
STRAY_PERCENT_RE = re.compile(r"%(?![0-9A-Fa-f]{2})")
IMAGE_EXT_RE = re.compile(r"\.(png|jpe?g|gif|svg|webp|ico)$", re.IGNORECASE)
UNSAFE_NAME_CHARS_RE = re.compile(r"[^A-Za-z0-9._-]")
UNDERSCORE_RUN_RE = re.compile(r"_+")

SKIP_LINK_PREFIXES = ("mailto:", "tel:", "javascript:")
INLINE_SRC_PREFIXES = ("data:", "blob:")
HTML_CONTENT_TYPES = ("text/html", "application/xhtml+xml")
DEFAULT_PORTS = {"http": 80, "https": 443}

SITEMAP_CANDIDATES = ("/sitemap.xml", "/sitemap_index.xml")

PLACEHOLDER_SERVICE = "https://placehold.co"
FALLBACK_WIDTH = 800
FALLBACK_HEIGHT = 450
MAX_PLACEHOLDER_SIDE = 4096
PLACEHOLDER_BG = (229, 231, 235)
PLACEHOLDER_FG = (107, 114, 128)

CHALLENGE_MARKERS = (
    "just a moment",
    "checking your browser",
    "please wait",
    "ddos protection",
    "challenge-running",
    "cf-challenge",
    "turnstile",
)
CHALLENGE_MAX_WAIT = 120.0

PLACEHOLDER_STRATEGIES = ("external", "local")

# -------------------- Settings --------------------


@dataclass
class Settings:
    max_depth: int = 2
    concurrency: int = 4
    delay: float = 0.3
    timeout: float = 15.0
    workers: int = 8
    placeholder: str = "external"
    sitemap_seed: bool = True
    allow_external_assets: bool = True

    # Retry
    max_attempts: int = 3
    base_backoff: float = 0.4


@dataclass(frozen=True)
class RequestConfig:
    user_agent: str = DEFAULT_USER_AGENT
    referer: Optional[str] = None
    cookies: Optional[str] = None  # "name=value; name2=value2"
    cookies_file: Optional[str] = None
    extra_headers: Tuple[str, ...] = ()  # "Name: value"
    delay: float = 0.0
    timeout: float = 15.0


@dataclass
class RewriteOptions:
    allow_external_assets: bool = True
    placeholder: str = "external"
    workers: int = 8


# -------------------- Errors --------------------


class FetchError(Exception):
    def __init__(self, url: str, reason: str, status: Optional[int] = None):
        super().__init__(f"{reason} ({url})")
        self.url = url
        self.reason = reason
        self.status = status


# -------------------- Utils --------------------


def safe_filename(name: str) -> str:
    name = UNSAFE_NAME_CHARS_RE.sub("_", name)
    name = UNDERSCORE_RUN_RE.sub("_", name)
    return name.strip("_")


def can_fetch_url(u: Optional[str]) -> bool:
    if not u:
        return False
    u = u.strip()
    if not u or u.startswith("#"):
        return False
    return not u.lower().startswith(SKIP_LINK_PREFIXES + INLINE_SRC_PREFIXES)


def ensure_parent_dir(p: Path) -> None:
    p.parent.mkdir(parents=True, exist_ok=True)


def reset_output_dir(out_dir: Path) -> None:
    shutil.rmtree(out_dir, ignore_errors=True)
    out_dir.mkdir(parents=True, exist_ok=True)


# -------------------- URL helpers --------------------


def _host_with_port(u) -> str:
    host = (u.hostname or "").lower()
    try:
        port = u.port
    except ValueError:
        return u.netloc.rsplit("@", 1)[-1].lower()
    if port and port != DEFAULT_PORTS.get(u.scheme.lower()):
        return f"{host}:{port}"
    return host


def url_origin(url: str) -> Tuple[str, str]:
    u = urlparse(url)
    return u.scheme.lower(), _host_with_port(u)


def origin_string(url: str) -> str:
    scheme, host = url_origin(url)
    return f"{scheme}://{host}"


def is_same_origin(base: str, other: str) -> bool:
    try:
        return url_origin(base) == url_origin(other)
    except ValueError:
        return False


def is_http_url(url: str) -> bool:
    u = urlparse(url)
    return u.scheme.lower() in DEFAULT_PORTS and bool(u.hostname)


def canonical_url(url: str) -> str:
    """Deduplication key: fragment removed, scheme/host lower-cased, empty path as "/"."""
    url, _ = urldefrag(url.strip())
    u = urlparse(url)
    netloc = _host_with_port(u)
    if u.username or u.password:
        netloc = u.netloc.rsplit("@", 1)[0] + "@" + netloc
    return urlunparse((u.scheme.lower(), netloc, u.path or "/", u.params, u.query, ""))


# -------------------- Path mapping --------------------


def _escape_segment(seg: str) -> str:
    # decoded separators stay escaped so /a%2Fb and /a_b get different files
    return (
        seg.replace("%", "%25")
        .replace("/", "%2F")
        .replace("\\", "%5C")
        .replace("\x00", "%00")
    )


def _clean_segments(pathname: str) -> List[str]:
    segs: List[str] = []
    for raw in pathname.split("/"):
        raw = STRAY_PERCENT_RE.sub("%25", raw)
        try:
            seg = unquote(raw, errors="strict")
        except UnicodeDecodeError:
            # not UTF-8; keep the escapes as they came
            segs.append(raw)
            continue
        if seg in ("", "."):
            continue
        if seg == "..":
            if segs:
                segs.pop()
            continue
        segs.append(_escape_segment(seg))
    return segs


def _split_pathname(pathname: str) -> Tuple[List[str], bool]:
    segs = _clean_segments(pathname or "/")
    return segs, not segs or pathname.endswith("/")


def url_to_local_path(
    root: str, target: str, out_dir: Path, ext_hint: Optional[str] = None
) -> Path:
    """Map ``target`` to its file inside ``out_dir``.

    Same-origin targets mirror the URL path (``/`` -> ``index.html``,
    extensionless -> ``.html``). Cross-origin targets go under a folder named
    after their host, with ``ext_hint`` appended when the path carries no
    extension.

    Query strings and fragments are dropped, so ``/list?page=1`` and
    ``/list?page=2`` land on the same file. That flattening is deliberate for
    now; disambiguating would need a query hash in the file name.

    An image used both by an ``<img>`` (with local placeholders) and by a
    stylesheet ``url()`` maps to one file too. The generated PNG and the
    downloaded bytes are written concurrently, and whichever lands last wins.
    """
    t = urlparse(target)
    segs, is_dir = _split_pathname(t.path)
    if not is_same_origin(root, target):
        if is_dir:
            segs.append("index")
        if not HAS_EXT_RE.search(segs[-1]):
            segs[-1] += ext_hint or ""
        host_dir = out_dir / (safe_filename(_host_with_port(t)) or "host")
        return host_dir.joinpath(*segs)
    if is_dir:
        segs.append("index.html")
    elif not HAS_EXT_RE.search(segs[-1]):
        segs[-1] += ".html"
    return out_dir.joinpath(*segs)


def make_relative(from_file: Path, to_file: Path) -> str:
    rel = Path(os.path.relpath(to_file, from_file.parent)).as_posix()
    if not rel.startswith(("./", "../")):
        rel = "./" + rel
    return quote(rel, safe="/._-~")


# -------------------- HTTP --------------------


def build_session(config: RequestConfig, pool_size: int = 32) -> requests.Session:
    s = requests.Session()
    adapter = HTTPAdapter(pool_connections=pool_size, pool_maxsize=pool_size)
    s.mount("http://", adapter)
    s.mount("https://", adapter)
    s.headers.update(DEFAULT_HEADERS)
    s.headers["User-Agent"] = config.user_agent
    for h in config.extra_headers:
        if ":" not in h:
            logging.warning("invalid header (no colon): %s", h)
            continue
        k, v = h.split(":", 1)
        s.headers[k.strip()] = v.strip()
    if config.cookies_file:
        jar = MozillaCookieJar()
        jar.load(config.cookies_file, ignore_discard=True, ignore_expires=True)
        s.cookies.update(jar)
        logging.info("loaded cookies: %s", config.cookies_file)
    return s


def is_challenge_response(resp: requests.Response) -> bool:
    if (resp.headers.get("cf-mitigated") or "").lower() == "challenge":
        return True
    if resp.status_code not in (403, 429, 503):
        return False
    server = (resp.headers.get("Server") or "").lower()
    if "cloudflare" not in server:
        return False
    body = (resp.text or "")[:20000].lower()
    return any(marker in body for marker in CHALLENGE_MARKERS)


class Fetcher:
    """HTTP GETs with request shaping, retries and a global in-flight cap.

    The request config is fixed at construction; nothing here mutates it,
    so worker threads can share one instance.
    """

    def __init__(
        self,
        config: RequestConfig,
        *,
        max_in_flight: int = 4,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
        max_attempts: int = 3,
        base_backoff: float = 0.4,
    ):
        self.config = config
        self.max_attempts = max_attempts
        self.base_backoff = base_backoff
        self.session = session if session is not None else build_session(config)
        self._sleep = sleep
        self._slots = threading.BoundedSemaphore(max(1, max_in_flight))

    def headers_for(self, url: str) -> Dict[str, str]:
        referer = self.config.referer or origin_string(url) + "/"
        headers = {
            "User-Agent": self.config.user_agent,
            "Referer": referer,
            "Origin": origin_string(referer),
        }
        if self.config.cookies:
            headers["Cookie"] = self.config.cookies
        return headers

    def _pause(self) -> None:
        if self.config.delay <= 0:
            return
        self._sleep(self.config.delay * random.uniform(0.8, 1.2))

    def fetch_once(self, url: str) -> requests.Response:
        self._pause()
        try:
            with self._slots:
                return self.session.get(
                    url,
                    headers=self.headers_for(url),
                    timeout=self.config.timeout,
                    allow_redirects=True,
                )
        except requests.RequestException as e:
            raise FetchError(url, str(e) or e.__class__.__name__) from e

    def fetch_with_retry(
        self,
        url: str,
        max_attempts: Optional[int] = None,
        base_backoff: Optional[float] = None,
    ) -> requests.Response:
        if max_attempts is None:
            max_attempts = self.max_attempts
        if base_backoff is None:
            base_backoff = self.base_backoff
        attempts = max(1, max_attempts)
        last_error: Optional[FetchError] = None
        for attempt in range(attempts):
            try:
                r = self.fetch_once(url)
                if 200 <= r.status_code < 300:
                    return r
                last_error = FetchError(url, f"HTTP {r.status_code}", r.status_code)
            except FetchError as e:
                last_error = e
            if attempt < attempts - 1:
                wait = base_backoff * (2 ** attempt)
                logging.debug(
                    "retry %d/%d for %s in %.2fs: %s",
                    attempt + 1,
                    attempts - 1,
                    url,
                    wait,
                    last_error.reason,
                )
                self._sleep(wait)
        assert last_error is not None
        raise last_error

    def download_binary(self, url: str, dest: Path, silent: bool = False) -> bool:
        try:
            r = self.fetch_with_retry(url)
            ensure_parent_dir(dest)
            dest.write_bytes(r.content)
        except (FetchError, OSError) as e:
            if silent:
                logging.debug("skipping asset %s: %s", url, e)
            else:
                logging.warning("skipping asset %s: %s", url, e)
            return False
        logging.debug("downloaded asset: %s -> %s", url, dest)
        return True


def is_html_content_type(ct: Optional[str]) -> bool:
    ct = (ct or "").lower()
    return any(t in ct for t in HTML_CONTENT_TYPES)


def response_text(r: requests.Response) -> str:
    ct = (r.headers.get("Content-Type") or "").lower()
    if not r.encoding or "charset" not in ct:
        try:
            r.encoding = r.apparent_encoding or "utf-8"
        except Exception:
            r.encoding = "utf-8"
    return r.text


# -------------------- Challenge session --------------------


@dataclass
class ChallengeResult:
    cookies: str
    user_agent: str


class BrowserSession:
    """Headful Chromium used to get past bot-protection challenges.

    After ``solve_challenge`` the page stays open and keeps its cookies;
    ``fetch_via_session`` reuses it and therefore must be called from one
    thread at a time (the crawl runs with concurrency 1 while a session is
    active).
    """

    def __init__(self, nav_timeout_ms: int = 30000, poll_interval: float = 1.0):
        self.nav_timeout_ms = nav_timeout_ms
        self.poll_interval = poll_interval
        self._pl = None
        self._browser = None
        self._page = None

    def has_active_session(self) -> bool:
        return self._page is not None and not self._page.is_closed()

    def _launch(self) -> None:
        try:
            from playwright.sync_api import sync_playwright
        except ImportError as e:
            raise RuntimeError(
                "Playwright not installed. Run: pip install playwright && playwright install"
            ) from e
        self._pl = sync_playwright().start()
        self._browser = self._pl.chromium.launch(
            headless=False, args=["--start-maximized"]
        )
        context = self._browser.new_context(viewport={"width": 1280, "height": 800})
        self._page = context.new_page()

    def solve_challenge(self, url: str) -> ChallengeResult:
        self.close()
        logging.info("Opening browser for challenge solving...")
        logging.info("Please solve any captcha or wait for the page to load.")
        self._launch()
        self._page.goto(url, wait_until="domcontentloaded")
        self._wait_until_resolved()
        cookies = self._page.context.cookies(origin_string(url))
        cookie_str = "; ".join(f"{c['name']}={c['value']}" for c in cookies)
        user_agent = self._page.evaluate("() => navigator.userAgent")
        logging.info("Challenge solved, extracted %d cookies.", len(cookies))
        return ChallengeResult(cookies=cookie_str, user_agent=user_agent)

    def _wait_until_resolved(self) -> None:
        deadline = time.monotonic() + CHALLENGE_MAX_WAIT
        while time.monotonic() < deadline:
            cookies = self._page.context.cookies()
            if any(c["name"] == "cf_clearance" for c in cookies):
                logging.info("cf_clearance cookie detected.")
                return
            title = (self._page.title() or "").lower()
            content = (self._page.content() or "").lower()
            challenged = any(m in title or m in content for m in CHALLENGE_MARKERS)
            if not challenged and cookies:
                logging.info("Page appears resolved, proceeding...")
                return
            time.sleep(self.poll_interval)
        logging.warning("Timeout waiting for challenge resolution. Proceeding anyway...")

    def fetch_via_session(self, url: str) -> Tuple[str, int, str]:
        if not self.has_active_session():
            raise RuntimeError("No browser session available. Call solve_challenge first.")
        try:
            response = self._page.goto(
                url, wait_until="networkidle", timeout=self.nav_timeout_ms
            )
            if response is None:
                return self._page.content(), 0, ""
            content_type = response.headers.get("content-type", "")
            return self._page.content(), response.status, content_type
        except Exception as e:
            raise FetchError(url, f"browser fetch failed: {e}") from e

    def close(self) -> None:
        page, browser, pl = self._page, self._browser, self._pl
        self._page = self._browser = self._pl = None
        try:
            if page is not None and not page.is_closed():
                page.close()
        except Exception:
            pass
        try:
            if browser is not None:
                browser.close()
        except Exception:
            pass
        try:
            if pl is not None:
                pl.stop()
        except Exception:
            pass


# -------------------- Sitemap --------------------


def _sitemap_locs(fetcher: Fetcher, url: str) -> Tuple[List[str], bool]:
    r = fetcher.fetch_with_retry(url)
    text = response_text(r)
    locs = [html.unescape(m.group(1)) for m in SITEMAP_LOC_RE.finditer(text)]
    return locs, "<sitemapindex" in text.lower()


def discover_seeds(fetcher: Fetcher, root: str) -> List[str]:
    found: List[str] = []
    read: Set[str] = set()
    for path in SITEMAP_CANDIDATES:
        sitemap_url = urljoin(root, path)
        try:
            locs, is_index = _sitemap_locs(fetcher, sitemap_url)
        except FetchError as e:
            logging.debug("no sitemap at %s: %s", sitemap_url, e)
            continue
        read.add(sitemap_url)
        if not is_index:
            found.extend(locs)
            continue
        for child in locs:
            if child in read:
                continue
            read.add(child)
            try:
                child_locs, _ = _sitemap_locs(fetcher, child)
            except FetchError as e:
                logging.debug("no sitemap at %s: %s", child, e)
                continue
            found.extend(child_locs)
    return found


# -------------------- Image placeholders --------------------


@dataclass
class Placeholder:
    src: str
    width: Optional[int] = None
    height: Optional[int] = None
    local: bool = False


def pillow_available() -> bool:
    try:
        from PIL import Image, ImageDraw, ImageFont  # noqa: F401
    except ImportError:
        return False
    return True


def resolve_placeholder_strategy(requested: str, local_supported: bool) -> str:
    if requested == "local" and not local_supported:
        logging.warning(
            "local placeholders need Pillow (pip install Pillow); using external"
        )
        return "external"
    return requested if requested in PLACEHOLDER_STRATEGIES else "external"


def _clamp_side(v: int) -> int:
    return max(1, min(MAX_PLACEHOLDER_SIDE, int(v)))


class PlaceholderProvider:
    def __init__(self, fetcher: Fetcher, *, pillow: bool):
        self.fetcher = fetcher
        self.pillow = pillow

    def probe_dimensions(self, image_url: str) -> Tuple[int, int]:
        if not self.pillow:
            return FALLBACK_WIDTH, FALLBACK_HEIGHT
        from PIL import Image

        try:
            r = self.fetcher.fetch_with_retry(image_url)
            with Image.open(BytesIO(r.content)) as img:
                width, height = img.size
        except (FetchError, OSError, ValueError, Image.DecompressionBombError) as e:
            logging.debug("could not probe %s: %s", image_url, e)
            return FALLBACK_WIDTH, FALLBACK_HEIGHT
        return width, height

    def get_placeholder(
        self, image_url: str, strategy: str, out_dir: Path, root: str
    ) -> Placeholder:
        width, height = self.probe_dimensions(image_url)
        if strategy == "local" and self.pillow:
            w, h = _clamp_side(width), _clamp_side(height)
            dest = url_to_local_path(root, image_url, out_dir, ".png")
            ensure_parent_dir(dest)
            render_placeholder_png(w, h, dest)
            return Placeholder(src=str(dest), width=w, height=h, local=True)
        return Placeholder(
            src=f"{PLACEHOLDER_SERVICE}/{width}x{height}", width=width, height=height
        )


def render_placeholder_png(width: int, height: int, dest: Path) -> None:
    from PIL import Image, ImageDraw, ImageFont

    img = Image.new("RGB", (width, height), PLACEHOLDER_BG)
    draw = ImageDraw.Draw(img)
    label = f"{width}×{height}"
    font = ImageFont.load_default()
    left, top, right, bottom = draw.textbbox((0, 0), label, font=font)
    x = (width - (right - left)) / 2 - left
    y = (height - (bottom - top)) / 2 - top
    draw.text((x, y), label, fill=PLACEHOLDER_FG, font=font)
    img.save(dest, format="PNG")


# -------------------- HTML utils --------------------


def bs4_parse(html_text: str) -> BeautifulSoup:
    try:
        return BeautifulSoup(html_text, "lxml")
    except Exception:
        return BeautifulSoup(html_text, "html.parser")


def effective_base_url(soup: BeautifulSoup, fallback: str) -> str:
    tag = soup.find("base", href=True)
    if tag and tag.get("href"):
        try:
            return urljoin(fallback, tag["href"].strip())
        except ValueError:
            pass
    return fallback


def serialize_html(soup: BeautifulSoup) -> str:
    try:
        return soup.decode(formatter="html")
    except Exception:
        return str(soup)


def _resolve(base: str, ref: str) -> Optional[str]:
    try:
        absu = urljoin(base, ref.strip())
        if not is_http_url(absu):
            return None
        return absu
    except ValueError:
        return None


def extract_links(html_text: str, root: str, page_url: str) -> List[str]:
    soup = bs4_parse(html_text)
    base = effective_base_url(soup, page_url)
    urls: Set[str] = set()
    for a in soup.find_all("a", href=True):
        href = (a.get("href") or "").strip()
        if not href or href.lower().startswith(SKIP_LINK_PREFIXES):
            continue
        absu = _resolve(base, href)
        if absu is None or not is_same_origin(root, absu):
            continue
        urls.add(canonical_url(absu))
    return sorted(urls)


# -------------------- Stylesheet rewriting --------------------


def process_stylesheet(
    fetcher: Fetcher,
    root: str,
    css_url: str,
    out_dir: Path,
    allow_external_assets: bool,
    workers: int = 8,
) -> Path:
    r = fetcher.fetch_with_retry(css_url)
    css_text = response_text(r)
    css_path = url_to_local_path(root, css_url, out_dir, ".css")

    # url( inside comments is rewritten as well; no CSS tokenizing here.
    with ThreadPoolExecutor(max_workers=max(1, workers)) as pool:
        downloads: Dict[Path, Future] = {}

        def repl(m: re.Match) -> str:
            raw = m.group(1).strip().strip("'\"").strip()
            if not raw or raw.startswith("#") or raw.lower().startswith("data:"):
                return m.group(0)
            asset_url = _resolve(css_url, raw)
            if asset_url is None:
                return m.group(0)
            if not allow_external_assets and not is_same_origin(root, asset_url):
                return m.group(0)
            local_path = url_to_local_path(root, asset_url, out_dir)
            if local_path not in downloads:
                silent = bool(IMAGE_EXT_RE.search(local_path.name))
                downloads[local_path] = pool.submit(
                    fetcher.download_binary, asset_url, local_path, silent
                )
            return f"url({make_relative(css_path, local_path)})"

        rewritten = CSS_URL_RE.sub(repl, css_text)
        ensure_parent_dir(css_path)
        css_path.write_text(rewritten, encoding="utf-8")
        for fut in as_completed(downloads.values()):
            fut.result()
    logging.debug("saved stylesheet: %s -> %s", css_url, css_path)
    return css_path


# -------------------- Document rewriting --------------------


@dataclass
class RewriteContext:
    root: str
    page_url: str
    base_url: str
    page_path: Path
    out_dir: Path
    options: RewriteOptions


Edit = Tuple[Tag, Dict[str, Optional[str]]]

DROP_ON_REWRITE = ("integrity", "crossorigin")


def _stylesheet_task(
    ctx: RewriteContext, fetcher: Fetcher, tag: Tag, css_url: str
) -> Edit:
    css_path = process_stylesheet(
        fetcher,
        ctx.root,
        css_url,
        ctx.out_dir,
        ctx.options.allow_external_assets,
        ctx.options.workers,
    )
    edits: Dict[str, Optional[str]] = {"href": make_relative(ctx.page_path, css_path)}
    edits.update({a: None for a in DROP_ON_REWRITE})
    return tag, edits


def _script_task(ctx: RewriteContext, fetcher: Fetcher, tag: Tag, js_url: str) -> Edit:
    js_path = url_to_local_path(ctx.root, js_url, ctx.out_dir, ".js")
    fetcher.download_binary(js_url, js_path)
    edits: Dict[str, Optional[str]] = {"src": make_relative(ctx.page_path, js_path)}
    edits.update({a: None for a in DROP_ON_REWRITE})
    return tag, edits


def _image_task(
    ctx: RewriteContext, placeholders: PlaceholderProvider, tag: Tag, img_url: str
) -> Edit:
    ph = placeholders.get_placeholder(
        img_url, ctx.options.placeholder, ctx.out_dir, ctx.root
    )
    src = make_relative(ctx.page_path, Path(ph.src)) if ph.local else ph.src
    edits: Dict[str, Optional[str]] = {"src": src, "srcset": None}
    if ph.width and not tag.get("width"):
        edits["width"] = str(ph.width)
    if ph.height and not tag.get("height"):
        edits["height"] = str(ph.height)
    return tag, edits


def _apply_edits(edits: Iterable[Edit]) -> None:
    for tag, attrs in edits:
        for name, value in attrs.items():
            if value is None:
                if name in tag.attrs:
                    del tag.attrs[name]
            else:
                tag[name] = value


def _rewrite_anchors(soup: BeautifulSoup, ctx: RewriteContext) -> None:
    for a in soup.find_all("a", href=True):
        href = (a.get("href") or "").strip()
        if not href or href.startswith("#"):
            continue
        absu = _resolve(ctx.base_url, href)
        if absu is None or not is_same_origin(ctx.root, absu):
            continue
        _, frag = urldefrag(absu)
        target = url_to_local_path(ctx.root, absu, ctx.out_dir)
        rel = make_relative(ctx.page_path, target)
        a["href"] = f"{rel}#{frag}" if frag else rel


def rewrite_and_save(
    fetcher: Fetcher,
    placeholders: PlaceholderProvider,
    root: str,
    page_url: str,
    html_text: str,
    out_dir: Path,
    options: RewriteOptions,
) -> Path:
    soup = bs4_parse(html_text)
    ctx = RewriteContext(
        root=root,
        page_url=page_url,
        base_url=effective_base_url(soup, page_url),
        page_path=url_to_local_path(root, page_url, out_dir),
        out_dir=out_dir,
        options=options,
    )
    allow_external = options.allow_external_assets

    jobs: List[Tuple[Callable[..., Edit], tuple]] = []
    for link in soup.find_all("link", href=True):
        rels = {r.lower() for r in (link.get("rel") or [])}
        if "stylesheet" not in rels:
            continue
        css_url = _resolve(ctx.base_url, link["href"])
        if css_url is None:
            continue
        if not allow_external and not is_same_origin(root, css_url):
            continue
        jobs.append((_stylesheet_task, (ctx, fetcher, link, css_url)))
    for script in soup.find_all("script", src=True):
        if not can_fetch_url(script["src"]):
            continue
        js_url = _resolve(ctx.base_url, script["src"])
        if js_url is None:
            continue
        if not allow_external and not is_same_origin(root, js_url):
            continue
        jobs.append((_script_task, (ctx, fetcher, script, js_url)))
    for img in soup.find_all("img", src=True):
        if not can_fetch_url(img["src"]):
            continue
        img_url = _resolve(ctx.base_url, img["src"])
        if img_url is None:
            continue
        jobs.append((_image_task, (ctx, placeholders, img, img_url)))

    edits: List[Edit] = []
    first_error: Optional[BaseException] = None
    if jobs:
        with ThreadPoolExecutor(max_workers=max(1, options.workers)) as pool:
            futures = [pool.submit(fn, *args) for fn, args in jobs]
            for fut in as_completed(futures):
                try:
                    edits.append(fut.result())
                except Exception as e:
                    if first_error is None:
                        first_error = e
    if first_error is not None:
        raise first_error
    _apply_edits(edits)

    for source in soup.select("picture > source[srcset]"):
        del source.attrs["srcset"]
    _rewrite_anchors(soup, ctx)
    for base in soup.find_all("base"):
        base.decompose()

    ensure_parent_dir(ctx.page_path)
    ctx.page_path.write_text(serialize_html(soup), encoding="utf-8")
    return ctx.page_path


# -------------------- Crawl engine --------------------


@dataclass
class CrawlTarget:
    url: str
    depth: int


@dataclass
class CrawlStats:
    pages_saved: int = 0
    pages_failed: int = 0
    skipped_non_html: int = 0
    saved_paths: List[Path] = field(default_factory=list)


class CrawlState(enum.Enum):
    IDLE = "idle"
    SEEDING = "seeding"
    DRAINING = "draining"
    DONE = "done"


@dataclass
class PageResult:
    target: CrawlTarget
    saved: Optional[Path] = None
    links: List[str] = field(default_factory=list)
    failed: bool = False
    non_html: bool = False


class Crawler:
    def __init__(
        self,
        start_url: str,
        out_dir: Path,
        settings: Settings,
        fetcher: Fetcher,
        placeholders: PlaceholderProvider,
        session: Optional[BrowserSession] = None,
    ):
        self.root = canonical_url(start_url)
        self.out_dir = out_dir
        self.settings = settings
        self.fetcher = fetcher
        self.placeholders = placeholders
        self.session = session
        self.options = RewriteOptions(
            allow_external_assets=settings.allow_external_assets,
            placeholder=settings.placeholder,
            workers=settings.workers,
        )
        self.state = CrawlState.IDLE
        self.frontier: Deque[CrawlTarget] = deque([CrawlTarget(self.root, 0)])
        self.visited: Set[str] = set()
        self.stats = CrawlStats()

    def run(self) -> CrawlStats:
        self.state = CrawlState.SEEDING
        if self.settings.sitemap_seed:
            self._seed_from_sitemap()
        self.state = CrawlState.DRAINING
        concurrency = max(1, self.settings.concurrency)
        while self.frontier:
            batch = self._next_batch(concurrency)
            if not batch:
                continue
            for result in self._run_batch(batch, concurrency):
                self._record(result)
        self.state = CrawlState.DONE
        return self.stats

    def _seed_from_sitemap(self) -> None:
        added = 0
        for s in discover_seeds(self.fetcher, self.root):
            u = _resolve(self.root, s)
            if u is None or not is_same_origin(self.root, u):
                continue
            self.frontier.append(CrawlTarget(canonical_url(u), 1))
            added += 1
        if added:
            logging.info("sitemap seeded %d URLs", added)

    def _next_batch(self, size: int) -> List[CrawlTarget]:
        batch: List[CrawlTarget] = []
        while self.frontier and len(batch) < size:
            target = self.frontier.popleft()
            if target.depth > self.settings.max_depth:
                continue
            key = canonical_url(target.url)
            if key in self.visited:
                continue
            self.visited.add(key)
            batch.append(CrawlTarget(key, target.depth))
        return batch

    def _run_batch(self, batch: List[CrawlTarget], concurrency: int) -> List[PageResult]:
        if concurrency == 1 or len(batch) == 1:
            return [self.process_page(t) for t in batch]
        with ThreadPoolExecutor(max_workers=concurrency) as pool:
            return list(pool.map(self.process_page, batch))

    def _record(self, result: PageResult) -> None:
        if result.saved is not None:
            self.stats.pages_saved += 1
            self.stats.saved_paths.append(result.saved)
        if result.failed:
            self.stats.pages_failed += 1
        if result.non_html:
            self.stats.skipped_non_html += 1
        for link in result.links:
            if link not in self.visited:
                self.frontier.append(CrawlTarget(link, result.target.depth + 1))

    def _fetch_page(self, url: str) -> Optional[str]:
        if self.session is not None and self.session.has_active_session():
            text, status, ct = self.session.fetch_via_session(url)
            if not 200 <= status < 300:
                raise FetchError(url, f"HTTP {status}", status)
            return text if is_html_content_type(ct) else None
        r = self.fetcher.fetch_with_retry(
            url, self.settings.max_attempts, self.settings.base_backoff
        )
        if not is_html_content_type(r.headers.get("Content-Type")):
            return None
        return response_text(r)

    def process_page(self, target: CrawlTarget) -> PageResult:
        result = PageResult(target)
        url = target.url
        try:
            html_text = self._fetch_page(url)
        except Exception as e:
            logging.warning("skipping %s: %s", url, e)
            result.failed = True
            return result
        if html_text is None:
            logging.debug("not html, skipped: %s", url)
            result.non_html = True
            return result

        if target.depth < self.settings.max_depth:
            result.links = extract_links(html_text, self.root, url)

        try:
            saved = rewrite_and_save(
                self.fetcher,
                self.placeholders,
                self.root,
                url,
                html_text,
                self.out_dir,
                self.options,
            )
        except Exception as e:
            logging.warning("skipping %s: %s", url, e)
            result.failed = True
            return result
        result.saved = saved
        logging.info(
            "Saved [depth=%d]: %s -> %s",
            target.depth,
            url,
            Path(os.path.relpath(saved, self.out_dir)).as_posix(),
        )
        return result


# -------------------- Config loader --------------------


def load_config_file(path: str) -> Dict[str, Union[str, int, float, bool, List[str]]]:
    p = Path(path)
    suf = p.suffix.lower()
    if suf in {".toml", ".tml"}:
        try:
            import tomllib  # py311+
        except ImportError:
            try:
                import tomli as tomllib  # backport
            except ImportError:
                raise RuntimeError("TOML config requires Python 3.11+ or 'tomli'")
        with open(p, "rb") as f:
            return tomllib.load(f) or {}
    elif suf in {".yaml", ".yml"}:
        try:
            import yaml
        except ImportError:
            raise RuntimeError("YAML config requires 'PyYAML'")
        with open(p, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
            if not isinstance(data, dict):
                raise RuntimeError("Top-level YAML must be a mapping")
            return data
    else:
        raise RuntimeError("Unsupported config format. Use .toml or .yaml")


# -------------------- CLI --------------------


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description="Mirror a website into ./output/<host> as a browsable static copy.",
    )
    p.add_argument("--config", type=str, help="path to config.toml|.yaml", default=None)
    p.add_argument("url", nargs="?", help="start URL (http or https)")

    # crawl
    p.add_argument("--max-depth", type=int, default=2, help="max link depth")
    p.add_argument(
        "--concurrency", type=int, default=4, help="pages (and requests) in flight"
    )
    p.add_argument(
        "--workers", type=int, default=8, help="asset sub-tasks per page"
    )
    p.add_argument(
        "--placeholder",
        choices=PLACEHOLDER_STRATEGIES,
        default="external",
        help="image placeholder strategy",
    )
    p.add_argument(
        "--no-sitemap", action="store_true", help="do not seed from sitemap.xml"
    )
    p.add_argument(
        "--no-external-assets",
        action="store_true",
        help="leave cross-origin stylesheets/scripts pointing at the web",
    )

    # network
    p.add_argument(
        "--delay", type=float, default=0.3, help="delay before each request (s)"
    )
    p.add_argument(
        "--timeout", type=float, default=15.0, help="request timeout seconds"
    )
    p.add_argument("--user-agent", type=str, default=None, help="custom User-Agent")
    p.add_argument("--referer", type=str, default=None, help="custom Referer")
    p.add_argument(
        "--cookies",
        type=str,
        default=None,
        help="cookies.txt (Netscape/Mozilla format)",
    )
    p.add_argument(
        "--header",
        action="append",
        default=[],
        help="extra request header 'Name: value'",
    )
    p.add_argument(
        "--no-challenge",
        action="store_true",
        help="skip the bot-protection check on the start URL",
    )

    # output
    p.add_argument(
        "--output-root", type=str, default="output", help="parent output directory"
    )
    p.add_argument("--verbose", action="store_true", help="debug logging")
    return p


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = build_arg_parser()
    preliminary, _ = parser.parse_known_args(argv)
    if preliminary.config:
        cfg = load_config_file(preliminary.config)
        if isinstance(cfg, dict):
            flat = {k: v for k, v in cfg.items() if not isinstance(v, dict)}
            for g in ("crawl", "network", "output", "general"):
                if isinstance(cfg.get(g), dict):
                    flat.update(cfg[g])
            parser.set_defaults(**{k.replace("-", "_"): v for k, v in flat.items()})
    return parser.parse_args(argv)


def settings_from_args(args: argparse.Namespace) -> Settings:
    return Settings(
        max_depth=max(0, args.max_depth),
        concurrency=max(1, args.concurrency),
        delay=max(0.0, args.delay),
        timeout=max(1.0, args.timeout),
        workers=max(1, args.workers),
        placeholder=args.placeholder,
        sitemap_seed=not args.no_sitemap,
        allow_external_assets=not args.no_external_assets,
    )


def request_config_from_args(args: argparse.Namespace, settings: Settings) -> RequestConfig:
    return RequestConfig(
        user_agent=args.user_agent or DEFAULT_USER_AGENT,
        referer=args.referer,
        cookies_file=args.cookies,
        extra_headers=tuple(args.header or []),
        delay=settings.delay,
        timeout=settings.timeout,
    )


def fetcher_for(config: RequestConfig, settings: Settings) -> Fetcher:
    return Fetcher(
        config,
        max_in_flight=settings.concurrency,
        max_attempts=settings.max_attempts,
        base_backoff=settings.base_backoff,
    )


def negotiate_challenge(
    fetcher: Fetcher, session: BrowserSession, start_url: str
) -> Optional[ChallengeResult]:
    try:
        probe = fetcher.fetch_once(start_url)
        if not is_challenge_response(probe):
            return None
        logging.info("Bot-protection challenge detected. Opening browser...")
    except FetchError as e:
        logging.info("Initial request failed (%s). Attempting browser-based access...", e)
    try:
        return session.solve_challenge(start_url)
    except Exception as e:
        logging.warning("Could not solve challenge (%s). Proceeding anyway...", e)
        session.close()
        return None


def main(argv: Optional[List[str]] = None) -> None:
    try:
        args = parse_args(argv)
    except RuntimeError as e:
        print(f"Config error: {e}", file=sys.stderr)
        sys.exit(1)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )

    if not args.url:
        print(
            "Usage: site-mirror <url> [--max-depth 2] [--concurrency 4] [--delay 0.3] "
            "[--placeholder external|local] [--no-sitemap] [--no-external-assets] "
            "[--user-agent UA] [--referer URL]",
            file=sys.stderr,
        )
        sys.exit(1)
    try:
        parsed = urlparse(args.url)
        valid = parsed.scheme in DEFAULT_PORTS and bool(parsed.hostname)
    except ValueError:
        valid = False
    if not valid:
        print("Invalid URL. Use http:// or https://", file=sys.stderr)
        sys.exit(1)
    start_url = canonical_url(args.url)

    dir_name = safe_filename(_host_with_port(urlparse(start_url)))
    if not dir_name:
        print("Unable to derive output directory name", file=sys.stderr)
        sys.exit(1)
    out_dir = (Path(args.output_root) / dir_name).resolve()

    settings = settings_from_args(args)
    config = request_config_from_args(args, settings)
    try:
        fetcher = fetcher_for(config, settings)
    except OSError as e:
        print(f"Could not load cookies: {e}", file=sys.stderr)
        sys.exit(1)
    session = BrowserSession()

    try:
        if not args.no_challenge:
            solved = negotiate_challenge(fetcher, session, start_url)
            if solved is not None:
                config = dataclasses.replace(
                    config, cookies=solved.cookies, user_agent=solved.user_agent
                )
                fetcher = fetcher_for(config, settings)
        if session.has_active_session() and settings.concurrency > 1:
            logging.info("Using concurrency=1 for browser-based scraping.")
            settings.concurrency = 1

        has_pillow = pillow_available()
        settings.placeholder = resolve_placeholder_strategy(
            settings.placeholder, has_pillow
        )
        placeholders = PlaceholderProvider(fetcher, pillow=has_pillow)

        try:
            reset_output_dir(out_dir)
        except OSError as e:
            print(f"Cannot write output directory {out_dir}: {e}", file=sys.stderr)
            sys.exit(1)

        print("Reminder: only mirror content you own or have permission to copy.")
        crawler = Crawler(start_url, out_dir, settings, fetcher, placeholders, session)
        stats = crawler.run()
    finally:
        session.close()

    print("Mirroring complete")
    print(f"Pages saved: {stats.pages_saved}")
    if stats.pages_failed:
        print(f"Pages skipped after errors: {stats.pages_failed}")
    print(f"Root: {out_dir}")


if __name__ == "__main__":
    main()
