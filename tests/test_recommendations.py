"""
Tests for purchase-intent scoring and cross-sell recommendations.
"""

import pytest

from chat_checkout.recommendations import (
    CrossSellEntry, RecommendationEngine, load_cross_selling, score_purchase_intent
)


# =============================================================================
# Intent scoring
# =============================================================================

class TestScorePurchaseIntent:

    @pytest.mark.parametrize("text, expected", [
        ("Je veux l'acheter", 1.0),
        ("I want to buy the couples game", 1.0),
        ("vous m'avez convaincu", 0.9),
        ("je veux passer commande", 0.8),
        ("très intéressant", 0.7),
        ("c'est combien ?", 0.6),
        ("prix", 0.6),
        ("vous acceptez wave ?", 0.4),
        ("bonjour", 0.0),
    ])
    def test_keyword_levels(self, text, expected):
        assert score_purchase_intent(text) == expected

    def test_highest_match_wins(self):
        # "acheter" alone is 0.8 but the full phrase is 1.0
        assert score_purchase_intent("je souhaite acheter deux jeux") == 1.0

    def test_urgency_raises_score(self):
        assert score_purchase_intent("la livraison gratuite ?") == 0.7

    def test_urgency_is_capped(self):
        assert score_purchase_intent("je le prends tant qu'il y a du stock") == 1.0

    def test_doubt_lowers_score(self):
        assert score_purchase_intent("je dois réfléchir au prix") == 0.5

    def test_doubt_never_goes_negative(self):
        assert score_purchase_intent("je vais réfléchir") == 0.0

    def test_case_insensitive(self):
        assert score_purchase_intent("JE COMMANDE") == 1.0


# =============================================================================
# Cross-sell
# =============================================================================

@pytest.fixture
def table():
    return load_cross_selling()


class TestRecommendationEngine:

    def test_table_is_loaded_from_products_file(self, table):
        assert [e.product_id for e in table["couples"]] == ["stvalentin", "maries"]

    def test_priority_order(self, catalog, table):
        recs = RecommendationEngine(catalog, table).recommend("couples", 0.2)
        assert [r.product_id for r in recs] == ["stvalentin", "maries"]
        assert [r.priority for r in recs] == [1, 2]

    def test_same_category_reason(self, catalog, table):
        recs = RecommendationEngine(catalog, table).recommend("couples", 0.2)
        assert recs[0].reason == "Often bought together with the Card Game for Unmarried Couples"

    def test_other_category_reason(self, catalog, table):
        recs = RecommendationEngine(catalog, table).recommend("famille", 0.2)
        assert recs[0].product_id == "amis"
        assert "friends edition" in recs[0].reason

    def test_unsorted_table_is_ordered(self, catalog):
        table = {"amis": [
            CrossSellEntry(product_id="collegues", priority=3),
            CrossSellEntry(product_id="famille", priority=1),
            CrossSellEntry(product_id="couples", priority=2),
        ]}
        recs = RecommendationEngine(catalog, table).recommend("amis", 0.0)
        assert [r.product_id for r in recs] == ["famille", "couples", "collegues"]

    def test_high_intent_gets_at_most_two(self, catalog):
        table = {"amis": [
            CrossSellEntry(product_id="famille", priority=1),
            CrossSellEntry(product_id="couples", priority=2),
            CrossSellEntry(product_id="collegues", priority=3),
        ]}
        engine = RecommendationEngine(catalog, table)
        assert len(engine.recommend("amis", 0.5)) == 3
        assert len(engine.recommend("amis", 0.9)) == 2

    def test_threshold_itself_is_not_high_intent(self, catalog):
        table = {"amis": [
            CrossSellEntry(product_id="famille", priority=1),
            CrossSellEntry(product_id="couples", priority=2),
            CrossSellEntry(product_id="collegues", priority=3),
        ]}
        assert len(RecommendationEngine(catalog, table).recommend("amis", 0.7)) == 3

    def test_max_results(self, catalog, table):
        recs = RecommendationEngine(catalog, table, max_results=1).recommend("couples", 0.9)
        assert len(recs) == 1

    def test_exclude(self, catalog, table):
        recs = RecommendationEngine(catalog, table).recommend("couples", 0.2, exclude=["stvalentin"])
        assert [r.product_id for r in recs] == ["maries"]

    def test_never_recommends_current_product(self, catalog):
        table = {"couples": [CrossSellEntry(product_id="couples", priority=1)]}
        assert RecommendationEngine(catalog, table).recommend("couples", 0.2) == []

    def test_unknown_product(self, catalog, table):
        assert RecommendationEngine(catalog, table).recommend("nope", 0.2) == []

    def test_catalog_miss_is_skipped(self, catalog):
        table = {"couples": [
            CrossSellEntry(product_id="ghost", priority=1),
            CrossSellEntry(product_id="maries", priority=2),
        ]}
        recs = RecommendationEngine(catalog, table).recommend("couples", 0.2)
        assert [r.product_id for r in recs] == ["maries"]

    def test_max_results_must_be_positive(self, catalog, table):
        with pytest.raises(ValueError):
            RecommendationEngine(catalog, table, max_results=0)
