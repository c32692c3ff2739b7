"""Tests for the heuristic transaction pattern extractor."""

from bs4 import BeautifulSoup

from browser_bank_recipes.recipes.extractor import PatternExtractor, extract, find_date, normalize_amount, score_element

TRANSACTIONS = [
    ("01/15/2024", "Coffee Shop Downtown", "-4.50", "1,234.56", "Posted"),
    ("01/14/2024", "Payroll Deposit ACME", "2,000.00", "1,239.06", "Posted"),
    ("01/12/2024", "Electric Company", "-120.33", "-760.94", "Posted"),
    ("01/10/2024", "Grocery Market", "-56.10", "-640.61", "Posted"),
    ("01/09/2024", "Online Bookstore", "-18.99", "-584.51", "Posted"),
]


def _table_page(rows):
    body = "".join(
        f'<tr class="transaction-row"><td class="date">{d}</td><td class="desc">{desc}</td>'
        f'<td class="amount">{amount}</td><td class="balance">{balance}</td><td class="status">{status}</td></tr>'
        for d, desc, amount, balance, status in rows
    )
    return f"""
    <html><head><script>var x = "01/01/2024 9.99";</script></head>
    <body>
      <header><h1>Example Bank</h1><span>Welcome back</span></header>
      <nav><a href="/">Home</a><a href="/accounts">Accounts</a><a href="/help">Help</a></nav>
      <main>
        <table>
          <thead><tr><th>Date</th><th>Description</th><th>Amount</th><th>Balance</th><th>Status</th></tr></thead>
          <tbody>{body}</tbody>
        </table>
      </main>
      <footer><p>Copyright 2024</p><p>Privacy</p><p>Terms</p></footer>
    </body></html>
    """


class TestTableExtraction:
    def test_extracts_only_transaction_rows(self):
        rows = PatternExtractor().extract(_table_page(TRANSACTIONS))

        assert len(rows) == 5
        first = rows[0]
        assert first.date == "01/15/2024"
        assert first.description == "Coffee Shop Downtown"
        assert first.amount == "-4.50"
        assert first.balance == "1234.56"
        assert rows[1].amount == "2000.00"
        assert all(row.confidence_score > 0 for row in rows)

    def test_pending_rows_are_excluded(self):
        pending = [
            ("01/16/2024", "Gas Station", "-40.00", "1,194.56", "Pending"),
            ("01/17/2024", "PENDING - Parking Garage", "-8.00", "1,186.56", "Posted"),
        ]
        rows = extract(_table_page(pending + TRANSACTIONS))

        assert len(rows) == 5
        descriptions = [row.description for row in rows]
        assert "Gas Station" not in descriptions
        assert not any("parking" in d.lower() for d in descriptions)

    def test_duplicate_rows_are_collapsed(self):
        rows = extract(_table_page(TRANSACTIONS + TRANSACTIONS[:2]))
        assert len(rows) == 5

    def test_parenthesised_amount_is_negative(self):
        assert normalize_amount("($45.00)") == "-45.00"
        assert normalize_amount("−12.00") == "-12.00"
        assert normalize_amount("$1,234.56") == "1234.56"


class TestGenericExtraction:
    def test_div_rows_use_second_amount_as_balance(self):
        items = "".join(
            f'<div class="activity-item"><span>{d}</span><span>{desc}</span><span>{amount}</span><span>{balance}</span></div>'
            for d, desc, amount, balance in [
                ("Jan 5, 2024", "Grocery Store", "$45.00", "$1,000.00"),
                ("Jan 4, 2024", "Pharmacy Visit", "$12.50", "$1,045.00"),
                ("Jan 3, 2024", "Transfer From Savings", "$200.00", "$1,057.50"),
            ]
        )
        html = f'<div class="page"><div class="activity-list">{items}</div></div>'

        rows = extract(html)

        assert [(r.date, r.description, r.amount, r.balance) for r in rows] == [
            ("Jan 5, 2024", "Grocery Store", "45.00", "1000.00"),
            ("Jan 4, 2024", "Pharmacy Visit", "12.50", "1045.00"),
            ("Jan 3, 2024", "Transfer From Savings", "200.00", "1057.50"),
        ]

    def test_category_and_popup_text(self):
        items = "".join(
            f'<li class="transaction"><span>{d}</span><span>{desc}, Opens popup</span><span class="category">Dining</span><span>-{amt}</span></li>'
            for d, desc, amt in [("2024-02-01", "Taco Place", "9.99"), ("2024-02-02", "Burger Barn", "11.49"), ("2024-02-03", "Pizza Palace", "22.00")]
        )

        rows = extract(f"<ul>{items}</ul>")

        assert len(rows) == 3
        assert rows[0].description == "Taco Place"
        assert rows[0].category == "Dining"
        assert rows[0].amount == "-9.99"


class TestNoPattern:
    def test_page_without_transactions(self):
        html = "<html><body><p>Welcome</p><p>Please sign in</p><p>Forgot password?</p></body></html>"
        assert extract(html) == []

    def test_empty_html(self):
        assert extract("") == []


class TestScoring:
    def test_transaction_row_scores_high(self):
        soup = BeautifulSoup(
            '<div class="transaction-row"><span>01/02/2024</span><span>Shop</span><span>$5.00</span></div>',
            "html.parser",
        )
        # money 10, date 15, class 20 + 5, three children 10
        assert score_element(soup.div) == 60

    def test_find_date_formats(self):
        assert find_date("Posted 3/7/24 at noon") == "3/7/24"
        assert find_date("2024-03-07") == "2024-03-07"
        assert find_date("March 7th, 2024") == "March 7th, 2024"
        assert find_date("7 Mar 2024") == "7 Mar 2024"
        assert find_date("no date here") is None
