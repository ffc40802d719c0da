# tests/test_csv_ingest.py
import pytest

from schema_engine.errors import EmptyBatchError
from schema_engine.services.csv_ingest import FORMAT_PASTE, parse_csv, parse_paste, read_rows

def test_csv_with_header_in_any_order():
    text = "path,domain,category,page_type\n/a,Corporate,Community,News\n\n/b,Beer,Drink Brands,Beers\n"
    rows = parse_csv(text)
    assert [r.row_number for r in rows] == [1, 2]
    assert rows[0].path == "/a"
    assert rows[0].domain == "Corporate"
    assert rows[0].page_type == "News"
    assert rows[1].category == "Drink Brands"

def test_csv_header_aliases_and_bom():
    text = "\ufeffURL,Domain,Page Type,Category\nhttps://x.com/A,Beer,Beers,Drink Brands\n"
    rows = parse_csv(text)
    assert len(rows) == 1
    assert rows[0].path == "https://x.com/A"
    assert rows[0].page_type == "Beers"

def test_csv_without_header_uses_default_order():
    rows = parse_csv("Corporate,/news/one,News,Community\nBeer,/beers/x,Beers,Drink Brands\n")
    assert len(rows) == 2
    assert rows[0].domain == "Corporate"
    assert rows[0].path == "/news/one"
    assert rows[1].category == "Drink Brands"

def test_csv_semicolon_delimiter():
    rows = parse_csv("domain;path;page_type;category\nPub;/pubs/x;Pubs;Local\n")
    assert rows[0].domain == "Pub"
    assert rows[0].category == "Local"

def test_empty_inputs_raise():
    with pytest.raises(EmptyBatchError):
        parse_csv("   \n\n")
    with pytest.raises(EmptyBatchError):
        parse_paste("")

def test_paste_is_path_first_and_tolerates_short_rows():
    rows = read_rows("/a\tCorporate\tNews\tCommunity\n\n/b\tBeer\n", FORMAT_PASTE)
    assert len(rows) == 2
    assert rows[0].path == "/a"
    assert rows[0].category == "Community"
    assert rows[1].domain == "Beer"
    assert rows[1].page_type == ""
