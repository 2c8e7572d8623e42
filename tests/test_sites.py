import pytest

from crawler.models import CandidateRecord
from crawler.sites import available_sites, get_adapter
from crawler.sites.fmtc import FmtcAdapter
from crawler.sites.mytheresa import MytheresaAdapter, all_items_loaded, normalize_sku, sku_from_url

FMTC_DETAIL = """
<html><body>
<h1>Alpha Store</h1>
<ul>
  <li class="list-group-item"><span>Homepage:</span>
    <div class="ml-5"><a href="https://alpha.example">alpha.example</a></div></li>
  <li class="list-group-item"><span>Primary Category:</span><div class="ml-5">Apparel</div></li>
  <li class="list-group-item"><span>Ships To:</span><div class="ml-5">US, CA</div></li>
  <li class="list-group-item"><span>Logo:</span><div class="ml-5"><img src="/img/logo/1001.png"></div></li>
</ul>
<a href="/cp/tools/1001/120x60">120x60 Logo</a>
<span class="label">FreshReach</span>
<table class="fmtc-table"><tbody>
  <tr>
    <td>1</td><td>1001</td><td>CJ Affiliate (12)</td>
    <td><span class="badge">Active</span></td><td><a href="/cp/join/12">Join</a></td>
  </tr>
</tbody></table>
</body></html>
"""

MYTHERESA_DETAIL = """
<html><head><title>Silk dress | Mytheresa</title></head><body>
<div class="product__area__branding__designer__link">Gucci</div>
<div class="product__area__branding__name">Silk midi dress</div>
<span class="pricing__prices__value--discount"><span class="pricing__prices__price">$ 1,200</span></span>
<span class="pricing__prices__value--original"><span class="pricing__prices__price">$ 2,400</span></span>
<div class="swiper-wrapper">
  <div class="swiper-slide"><img class="product__gallery__carousel__image" src="https://img.mytheresa.com/a.jpg?w=100"></div>
  <div class="swiper-slide"><img class="product__gallery__carousel__image" src="https://img.mytheresa.com/a.jpg?w=800"></div>
  <div class="swiper-slide"><img class="product__gallery__carousel__image" src="https://img.mytheresa.com/b.jpg"></div>
</div>
<div class="sizeitem"><span class="sizeitem__label">IT 38</span></div>
<div class="sizeitem sizeitem--notavailable"><span class="sizeitem__label">IT 40</span></div>
<div class="accordion__body__content">
  <p>Flowing silk.</p>
  <ul><li>Material: silk</li><li>Color: red</li><li>Item number: P00123</li><li>Made in Italy</li></ul>
</div>
<div class="breadcrumb">
  <a class="breadcrumb__item__link">Women</a><a class="breadcrumb__item__link">Dresses</a>
</div>
</body></html>
"""


def test_registry_knows_both_sites():
    assert set(available_sites()) >= {"fmtc", "mytheresa"}
    assert isinstance(get_adapter("fmtc"), FmtcAdapter)
    with pytest.raises(ValueError):
        get_adapter("unknown-site")


def test_fmtc_detail_page():
    adapter = FmtcAdapter()
    candidate = CandidateRecord(
        name="Alpha",
        detail_url="https://account.fmtc.co/cp/program_directory/m/1001/alpha",
        source_id="1001",
        attributes={"country": "US"},
    )
    record = adapter.extractor.extract(candidate, FMTC_DETAIL, execution_id="exec-1")

    assert record.name == "Alpha Store"
    assert record.site == "fmtc"
    assert record.execution_id == "exec-1"
    assert record.identifiers == {"fmtc_id": "1001"}
    assert record.availability == "Active"
    assert record.attributes["homepage"] == "https://alpha.example"
    assert record.attributes["primary_category"] == "Apparel"
    assert record.attributes["ships_to"] == ["US", "CA"]
    assert record.attributes["country"] == "US"
    assert record.attributes["fresh_reach_supported"] is True
    network = record.attributes["networks"][0]
    assert network["network"] == "CJ Affiliate"
    assert network["network_id"] == "12"
    assert network["join_url"] == "https://account.fmtc.co/cp/join/12"
    assert record.images == [
        "https://account.fmtc.co/img/logo/1001.png",
        "https://account.fmtc.co/cp/tools/1001/120x60",
    ]


def test_mytheresa_detail_page():
    adapter = MytheresaAdapter()
    candidate = CandidateRecord(
        name="Dress",
        detail_url="https://www.mytheresa.com/us/en/women/silk-midi-dress-p00999",
        attributes={"brand": "GUCCI"},
    )
    record = adapter.extractor.extract(candidate, MYTHERESA_DETAIL)

    assert record.name == "Silk midi dress"
    assert record.brand == "Gucci"
    assert record.current_price.amount == pytest.approx(1200)
    assert record.current_price.currency == "USD"
    assert record.original_price.amount == pytest.approx(2400)
    assert record.images == ["https://img.mytheresa.com/a.jpg?w=100", "https://img.mytheresa.com/b.jpg"]
    assert record.identifiers == {"sku": "p00999"}
    assert record.availability == "in_stock"
    assert record.attributes["sizes"] == ["IT 38"]
    assert record.attributes["material"] == "silk"
    assert record.attributes["color"] == "red"
    assert record.attributes["breadcrumbs"] == ["Women", "Dresses"]
    assert record.description == "Flowing silk.\n\nDetails:\nMade in Italy"


def test_mytheresa_sku_helpers():
    assert sku_from_url("https://www.mytheresa.com/us/en/women/dress-p01031061") == "p01031061"
    assert sku_from_url("https://www.mytheresa.com/us/en/women/new-arrivals") is None
    assert normalize_sku("P00123") == "p00123"
    assert normalize_sku("00123") == "p00123"


def test_mytheresa_load_more_info():
    assert all_items_loaded("You've viewed 120 of 120 products") is True
    assert all_items_loaded("You've viewed 60 of 120 products") is False
    assert all_items_loaded(None) is False
