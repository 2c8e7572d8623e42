from crawler.models import CandidateRecord
from crawler.scraper.detail import DetailExtractor, dedupe_images


def test_dedupe_images_keeps_first_variant_in_order():
    urls = [
        "https://cdn.example.com/a.jpg?w=100",
        None,
        "data:image/png;base64,AAAA",
        "https://CDN.example.com/a.jpg?w=800",
        "//cdn.example.com/b.jpg",
        "/c.jpg",
        "https://cdn.example.com/b.jpg#zoom",
    ]
    assert dedupe_images(urls, "https://shop.example.com") == [
        "https://cdn.example.com/a.jpg?w=100",
        "https://cdn.example.com/b.jpg",
        "https://shop.example.com/c.jpg",
    ]


def test_dedupe_images_without_base_url():
    assert dedupe_images(["a.jpg", "a.jpg", "b.jpg"]) == ["a.jpg", "b.jpg"]


def test_missing_mandatory_field_warns_but_returns_record():
    warnings = []
    extractor = DetailExtractor("demo", lambda soup, candidate: {"name": None})
    candidate = CandidateRecord(name="", detail_url="https://demo.example/p/1")

    record = extractor.extract(candidate, "<html></html>", on_warning=lambda msg, ctx: warnings.append(ctx))

    assert record.url == "https://demo.example/p/1"
    assert record.name is None
    assert warnings == [{"url": "https://demo.example/p/1", "missing": ["name"]}]


def test_broken_field_parser_degrades_to_candidate_data():
    def broken(soup, candidate):
        raise KeyError("price")

    extractor = DetailExtractor("demo", broken)
    candidate = CandidateRecord(name="Listed", detail_url="https://demo.example/p/2", attributes={"price": "$5"})
    record = extractor.extract(candidate, "<html></html>")
    assert record.name == "Listed"
    assert record.attributes == {"price": "$5"}


def test_unknown_fields_land_in_attributes():
    extractor = DetailExtractor("demo", lambda soup, candidate: {"name": "X", "colour": "red", "url": "ignored"})
    record = extractor.extract(CandidateRecord(name="X", detail_url="https://demo.example/p/3"), "")
    assert record.url == "https://demo.example/p/3"
    assert record.attributes["colour"] == "red"
