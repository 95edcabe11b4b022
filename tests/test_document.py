import pytest
from bs4 import BeautifulSoup

from site_mirror import (
    FetchError,
    PlaceholderProvider,
    RewriteOptions,
    extract_links,
    resolve_placeholder_strategy,
    rewrite_and_save,
)

ROOT = "https://example.com/"
PAGE = "https://example.com/blog/post"

HTML = """<html><head>
<link rel="stylesheet" href="/assets/app.css" integrity="sha384-x" crossorigin="anonymous">
<link rel="icon" href="/favicon.ico">
<script src="https://cdn.example.net/lib.js"></script>
<script src="/js/app.js"></script>
<script>inline()</script>
</head><body>
<a href="/about">About</a>
<a href="/docs/#install">Docs</a>
<a href="#top">Top</a>
<a href="mailto:x@example.com">Mail</a>
<a href="https://other.example.org/">Other</a>
<a href="http://[bad">Bad</a>
<picture><source srcset="/img/photo.webp"><img src="/img/photo.jpg" srcset="/img/photo-2x.jpg 2x" alt="p"></picture>
<img src="/img/wide.png" width="50" alt="w">
<img src="data:image/gif;base64,R0lGOD" alt="d">
</body></html>
"""


@pytest.fixture
def site(session, png):
    session.add("https://example.com/assets/app.css", "body{color:red}", content_type="text/css")
    session.add("https://example.com/js/app.js", "app()", content_type="text/javascript")
    session.add("https://cdn.example.net/lib.js", "lib()", content_type="text/javascript")
    session.add("https://example.com/img/photo.jpg", png(120, 80), content_type="image/jpeg")
    return session


def _rewrite(fetcher, placeholders, out, html=HTML, page=PAGE, **opts):
    options = RewriteOptions(**opts)
    saved = rewrite_and_save(fetcher, placeholders, ROOT, page, html, out, options)
    return saved, BeautifulSoup(saved.read_text(encoding="utf-8"), "html.parser")


def test_assets_are_rewritten_relative_to_page(site, fetcher, placeholders, tmp_path):
    saved, soup = _rewrite(fetcher, placeholders, tmp_path, allow_external_assets=False)
    assert saved == tmp_path / "blog" / "post.html"

    css = soup.find("link", rel="stylesheet")
    assert css["href"] == "../assets/app.css"
    assert "integrity" not in css.attrs and "crossorigin" not in css.attrs
    assert (tmp_path / "assets" / "app.css").read_text(encoding="utf-8") == "body{color:red}"
    assert soup.find("link", rel="icon")["href"] == "/favicon.ico"

    scripts = soup.find_all("script", src=True)
    assert scripts[0]["src"] == "https://cdn.example.net/lib.js"
    assert scripts[1]["src"] == "../js/app.js"
    assert (tmp_path / "js" / "app.js").read_text(encoding="utf-8") == "app()"


def test_cross_origin_script_left_alone_when_external_disallowed(site, fetcher, placeholders, tmp_path):
    _rewrite(fetcher, placeholders, tmp_path, allow_external_assets=False)
    assert site.calls["https://cdn.example.net/lib.js"] == 0
    assert not (tmp_path / "cdn.example.net").exists()


def test_cross_origin_script_downloaded_when_allowed(site, fetcher, placeholders, tmp_path):
    _, soup = _rewrite(fetcher, placeholders, tmp_path, allow_external_assets=True)
    assert soup.find_all("script", src=True)[0]["src"] == "../cdn.example.net/lib.js"
    assert (tmp_path / "cdn.example.net" / "lib.js").read_text(encoding="utf-8") == "lib()"


def test_images_become_external_placeholders(site, fetcher, placeholders, tmp_path):
    _, soup = _rewrite(fetcher, placeholders, tmp_path, allow_external_assets=False)
    photo = soup.find("img", alt="p")
    assert photo["src"] == "https://placehold.co/120x80"
    assert photo["width"] == "120" and photo["height"] == "80"
    assert "srcset" not in photo.attrs
    assert "srcset" not in soup.find("source").attrs

    wide = soup.find("img", alt="w")
    assert wide["src"] == "https://placehold.co/800x450"
    assert wide["width"] == "50"
    assert wide["height"] == "450"

    assert soup.find("img", alt="d")["src"].startswith("data:")


def test_images_become_local_placeholders(site, fetcher, placeholders, tmp_path):
    from PIL import Image

    _, soup = _rewrite(fetcher, placeholders, tmp_path, placeholder="local")
    photo = soup.find("img", alt="p")
    assert photo["src"] == "../img/photo.jpg"
    with Image.open(tmp_path / "img" / "photo.jpg") as img:
        assert img.size == (120, 80)
        assert img.format == "PNG"


@pytest.mark.parametrize(
    "requested, pillow, expected",
    [("local", False, "external"), ("local", True, "local"), ("external", True, "external"), ("bogus", True, "external")],
)
def test_placeholder_strategy_falls_back(requested, pillow, expected):
    assert resolve_placeholder_strategy(requested, pillow) == expected


def test_without_pillow_images_get_fallback_size(site, fetcher, tmp_path):
    provider = PlaceholderProvider(fetcher, pillow=False)
    p = provider.get_placeholder("https://example.com/img/photo.jpg", "local", tmp_path, ROOT)
    assert (p.src, p.width, p.height, p.local) == ("https://placehold.co/800x450", 800, 450, False)
    assert site.calls["https://example.com/img/photo.jpg"] == 0
    assert not any(tmp_path.iterdir())


def test_anchors_point_at_local_files(site, fetcher, placeholders, tmp_path):
    _, soup = _rewrite(fetcher, placeholders, tmp_path)
    hrefs = {a.get_text(): a["href"] for a in soup.find_all("a")}
    assert hrefs["About"] == "../about.html"
    assert hrefs["Docs"] == "../docs/index.html#install"
    assert hrefs["Top"] == "#top"
    assert hrefs["Mail"] == "mailto:x@example.com"
    assert hrefs["Other"] == "https://other.example.org/"
    assert hrefs["Bad"] == "http://[bad"


def test_base_href_is_honoured_and_removed(session, fetcher, placeholders, tmp_path):
    html = '<html><head><base href="/sub/"></head><body><a href="x">X</a></body></html>'
    saved, soup = _rewrite(fetcher, placeholders, tmp_path, html=html, page=ROOT)
    assert saved == tmp_path / "index.html"
    assert soup.find("a")["href"] == "./sub/x.html"
    assert soup.find("base") is None


def test_failed_stylesheet_fails_the_page(session, fetcher, placeholders, tmp_path):
    html = '<html><head><link rel="stylesheet" href="/missing.css"></head><body></body></html>'
    with pytest.raises(FetchError):
        _rewrite(fetcher, placeholders, tmp_path, html=html)
    assert not (tmp_path / "blog" / "post.html").exists()


def test_extract_links_keeps_same_origin_only():
    links = extract_links(HTML, ROOT, PAGE)
    assert links == [
        "https://example.com/about",
        "https://example.com/blog/post",
        "https://example.com/docs/",
    ]
