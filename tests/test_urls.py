from pubparts.core.urls import duplicate_key, is_http_url, printables_model_id, resolve_against


def test_duplicate_key_collapses_printables_variants() -> None:
    assert duplicate_key("https://www.printables.com/model/555-motor-mount") == "printables-555"
    assert duplicate_key("https://printables.com/de/model/555?lang=de") == "printables-555"


def test_duplicate_key_collapses_thingiverse_things() -> None:
    assert duplicate_key("https://www.thingiverse.com/thing:4242/files") == "thingiverse-4242"


def test_duplicate_key_normalizes_plain_urls() -> None:
    assert duplicate_key("HTTPS://www.Example.com/parts/deck/") == "example.com/parts/deck"
    assert duplicate_key("http://example.com/parts/deck") == "example.com/parts/deck"


def test_printables_model_id() -> None:
    assert printables_model_id("https://www.printables.com/model/123456-enclosure") == "123456"
    assert printables_model_id("https://example.com/model/1") is None


def test_is_http_url_rejects_other_schemes() -> None:
    assert is_http_url("https://example.com/a")
    assert not is_http_url("ftp://example.com/a")
    assert not is_http_url("not a url")
    assert not is_http_url(None)


def test_resolve_against_handles_relative_and_protocol_relative() -> None:
    page = "https://example.com/things/mount"
    assert resolve_against("//cdn.example.com/a.png", page) == "https://cdn.example.com/a.png"
    assert resolve_against("/img/a.png", page) == "https://example.com/img/a.png"
    assert resolve_against("https://other.example/a.png", page) == "https://other.example/a.png"
    assert resolve_against("  ", page) is None
