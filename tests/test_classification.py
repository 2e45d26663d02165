"""
Tests for contributor classification (civic_sync/lib/classification.py).
"""

import pytest

from civic_sync.lib.classification import classify_contributor, infer_industry


class TestClassifyContributor:
    """Tests for classify_contributor()."""

    @pytest.mark.parametrize(
        "employer,occupation,expected",
        [
            ("Self-Employed", "Consultant", "individual"),
            ("Acme Widgets LLC", "Engineer", "corporate"),
            ("Friends of Farmers PAC", None, "pac"),
            ("United Auto Workers", "Organizer", "union"),
            ("Globex Inc", "Retired", "individual"),
            (None, None, "individual"),
        ],
    )
    def test_categories(self, employer, occupation, expected):
        assert classify_contributor(employer, occupation) == expected

    def test_retired_employer_wins_over_corporate(self):
        assert classify_contributor("Retired from Initech Corp", "None") == "individual"


class TestInferIndustry:
    """Tests for infer_industry()."""

    @pytest.mark.parametrize(
        "employer,occupation,expected",
        [
            ("Smith & Jones", "Attorney", "Legal"),
            ("Mercy Hospital", "Nurse", "Healthcare"),
            ("First National Bank", "Teller", "Finance & Insurance"),
            ("Initech", "Software Developer", "Technology"),
            ("Public Schools", "Teacher", "Education"),
            ("Unknown", "Homemaker", None),
        ],
    )
    def test_industries(self, employer, occupation, expected):
        assert infer_industry(employer, occupation) == expected

    def test_rule_order_puts_retired_teacher_in_retired(self):
        assert infer_industry("None", "Retired Teacher") == "Retired"
