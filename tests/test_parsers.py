import pytest

from stocklens.parsers import ReceiptAmountParser, extract_amount, parse_amount_token


def test_keyword_line_with_currency_symbol():
    assert extract_amount("TOTAL £45.67") == 45.67


def test_implied_decimal_on_keyword_line():
    assert extract_amount("TOTAL 1250") == 12.5


def test_small_integer_total_is_kept():
    assert extract_amount("TOTAL 45") == 45.0


def test_bottom_scan_finds_standalone_amount():
    text = "CORNER SHOP\nMilk\nBread\n12.50"
    assert extract_amount(text) == 12.5


def test_no_numbers_returns_none():
    assert extract_amount("Thank you for shopping\nSee you soon") is None


@pytest.mark.parametrize("text", ["", "   ", "\n\n"])
def test_empty_text_returns_none(text):
    assert extract_amount(text) is None


def test_total_preferred_over_subtotal():
    text = "Subtotal 10.00\nTax 2.00\nTotal 12.00\nThank you"
    assert extract_amount(text) == 12.0


def test_subtotal_used_when_no_total():
    assert extract_amount("SUB-TOTAL 8.40\nThanks") == 8.4


def test_change_line_is_ignored():
    text = "TOTAL 20.00\nCASH 25.00\nCHANGE 5.00"
    assert extract_amount(text) == 20.0


def test_value_on_line_after_keyword():
    assert extract_amount("AMOUNT DUE\n$23.45\nThank you") == 23.45


def test_ocr_letter_confusions_are_repaired():
    assert extract_amount("TOTAL 1O.5O") == 10.5
    assert extract_amount("Total l2.34") == 12.34


def test_letters_in_words_are_not_rewritten():
    assert ReceiptAmountParser.normalize_line("TOTAL lOl 4O") == "TOTAL lOl 40"


def test_rightmost_token_on_keyword_line_wins():
    assert extract_amount("Total 3 items 17.85") == 17.85


def test_bottom_scan_is_limited_to_last_lines():
    parser = ReceiptAmountParser(bottom_scan_lines=2)
    text = "9.99\nline a\nline b"
    assert parser.extract_amount(text) is None


def test_configurable_implied_decimal_threshold():
    parser = ReceiptAmountParser(implied_decimal_threshold=100)
    assert parser.extract_amount("TOTAL 250") == 2.5


@pytest.mark.parametrize("token,expected", [
    ("12,50", 12.5),
    ("1,234.56", 1234.56),
    ("1,234", 1234.0),
    ("€ 7.25", 7.25),
    ("USD 99", 99.0),
    ("abc", None),
    ("", None),
    ("1.2.3", None),
    ("1.234,56", None),
])
def test_parse_amount_token(token, expected):
    assert parse_amount_token(token) == expected


def test_dot_thousands_with_decimal_comma_is_skipped():
    assert extract_amount("TOTAL €1.234,56") is None


def test_ambiguous_token_falls_through_to_next_keyword_line():
    text = "TOTAL €1.234,56\nAMOUNT DUE 1234.56"
    assert extract_amount(text) == 1234.56
