"""Tests for gallery URL normalization, dedup and capping."""

from pipeline.images.normalizer import make_image_ref, normalize_url, normalize_urls, with_token

HOSTS = ("ebayimg.com",)


def test_thumbnail_token_is_rewritten_to_highest():
    """Thumbnail size tokens are rewritten to the largest variant."""
    url = "https://i.ebayimg.com/images/g/abc/s-l225.jpg"
    assert normalize_url(url, HOSTS) == "https://i.ebayimg.com/images/g/abc/s-l1600.jpg"


def test_normalization_is_idempotent():
    """Normalizing a normalized URL changes nothing."""
    urls = [
        "https://i.ebayimg.com/images/g/abc/s-l64.jpg?set_id=1",
        "https://i.ebayimg.com/thumbs/images/g/xyz/s-l140.webp",
        "https://i.ebayimg.com/00/s/MTIwMA==/z/KEY/$_12.JPG",
        "https://i.ebayimg.com/images/g/odd/s-l777.jpg",
    ]
    for url in urls:
        once = normalize_url(url, HOSTS)
        assert once is not None
        assert normalize_url(once, HOSTS) == once


def test_query_and_fragment_are_stripped():
    """Query strings and fragments are dropped."""
    url = "https://i.ebayimg.com/images/g/abc/s-l500.jpg?x=1#frag"
    assert normalize_url(url, HOSTS) == "https://i.ebayimg.com/images/g/abc/s-l1600.jpg"


def test_unknown_token_passes_through():
    """Size tokens outside the table are left alone."""
    url = "https://i.ebayimg.com/images/g/abc/s-l777.jpg"
    assert normalize_url(url, HOSTS) == url


def test_legacy_shape():
    """Legacy $_N URLs are rewritten and keyed case-insensitively."""
    ref = make_image_ref("https://i.ebayimg.com/00/s/MTIwMA==/z/KEY/$_12.JPG", HOSTS)
    assert ref.normalized_url == "https://i.ebayimg.com/00/s/MTIwMA==/z/KEY/$_57.JPG"
    assert ref.dedupe_key == "/00/s/mtiwma==/z/key/.jpg"


def test_rejects_other_hosts_schemes_and_shapes():
    """Foreign hosts, schemes, shapes and non-strings are rejected."""
    rejected = [
        "https://example.com/images/g/abc/s-l64.jpg",
        "ftp://i.ebayimg.com/images/g/abc/s-l64.jpg",
        "https://i.ebayimg.com/some/other/path.jpg",
        "not a url",
        "",
        None,
        42,
    ]
    for raw in rejected:
        assert make_image_ref(raw, HOSTS) is None


def test_host_family_allows_subdomains_only():
    """The host family matches the domain and its subdomains, not lookalikes."""
    assert normalize_url("https://i.ebayimg.com/images/g/a/s-l64.jpg", HOSTS)
    assert normalize_url("https://ebayimg.com/images/g/a/s-l64.jpg", HOSTS)
    assert normalize_url("https://evil-ebayimg.com/images/g/a/s-l64.jpg", HOSTS) is None


def test_dedup_keeps_first_seen_order():
    """Duplicates collapse onto their first occurrence."""
    urls = [
        "https://i.ebayimg.com/images/g/a/s-l64.jpg",
        "https://i.ebayimg.com/images/g/b/s-l64.jpg",
        "https://i.ebayimg.com/images/g/a/s-l500.jpg?x=2",
        "https://i.ebayimg.com/images/g/c/s-l1600.jpg",
        "https://i.ebayimg.com/images/g/B/s-l225.jpg",
    ]
    refs = normalize_urls(urls, hosts=HOSTS)
    assert [r.raw_url for r in refs] == [urls[0], urls[1], urls[3]]
    assert len({r.dedupe_key for r in refs}) == len(refs)


def test_cap_keeps_first_twelve():
    """Only the first twelve survivors are kept."""
    urls = [f"https://i.ebayimg.com/images/g/item{i}/s-l64.jpg" for i in range(20)]
    refs = normalize_urls(urls, max_images=12, hosts=HOSTS)
    assert len(refs) == 12
    assert [r.raw_url for r in refs] == urls[:12]


def test_non_list_input_yields_nothing():
    """Non-list input normalizes to an empty list."""
    assert normalize_urls(None, hosts=HOSTS) == []


def test_with_token_on_unknown_path():
    """with_token only rewrites recognized shapes."""
    assert with_token("https://i.ebayimg.com/x/y.jpg", 960) is None
    assert with_token("https://i.ebayimg.com/images/g/a/s-l1600.jpg", 960) == (
        "https://i.ebayimg.com/images/g/a/s-l960.jpg"
    )
