"""
Cross-sell recommendations and purchase-intent scoring.

Both are pure functions of their inputs: nothing here touches a session
or an order draft. Callers decide whether and when to show the result.
"""

import json
import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel, Field

from chat_checkout import config
from chat_checkout.collaborators import ProductCatalog
from chat_checkout.models import Recommendation

logger = logging.getLogger(__name__)


class CrossSellEntry(BaseModel):
    """One row of the cross-sell table."""
    product_id: str = Field(..., min_length=1)
    priority: int = Field(..., ge=0)


CrossSellTable = Dict[str, List[CrossSellEntry]]


# Keyword triggers, strongest first; the highest matching score wins.
BUYING_INTENTS: List[Tuple[float, Tuple[str, ...]]] = [
    (1.0, (
        "je veux l'acheter", "je veux commander", "je prends", "je souhaite acheter",
        "j'achète", "je le veux", "je commande", "je vais le prendre", "vendez-moi",
        "vendez moi", "c'est d'accord", "je l'achète", "j'en veux un", "je le prends",
        "i want to buy", "i'll take it", "i will take it", "buy it", "order it now",
    )),
    (0.9, (
        "c'est ce que je veux", "je suis convaincu", "ça me convient",
        "c'est exactement ce que je cherche", "vous m'avez convaincu", "il m'intéresse",
        "that's what i want", "i'm convinced", "exactly what i need",
    )),
    (0.8, (
        "acheter", "commander", "payer", "prix final", "passer commande",
        "buy", "order", "checkout", "pay",
    )),
    (0.7, (
        "ça m'intéresse beaucoup", "très intéressant", "c'est un bon prix",
        "c'est intéressant", "very interesting", "good price",
    )),
    (0.6, (
        "prix", "tarif", "coût", "combien ça coûte", "c'est combien", "livraison",
        "price", "cost", "how much", "delivery", "payment methods",
    )),
    (0.4, (
        "combien", "intéressé", "intéressée", "délai de livraison", "modes de paiement",
        "wave", "orange money", "paiement", "cash", "carte", "interested", "card",
    )),
]

URGENCY_KEYWORDS = ("livraison gratuite", "free delivery", "stock")
DOUBT_KEYWORDS = (
    "hésiter", "pas sûr", "réfléchir", "comparer", "différence", "avantages",
    "inconvénients", "not sure", "think about it", "compare", "difference",
)


def score_purchase_intent(text: str) -> float:
    """
    Score how close a message is to a purchase decision.

    Returns:
        A value between 0 and 1
    """
    lowered = text.lower()

    score = 0.0
    for value, triggers in BUYING_INTENTS:
        if any(trigger in lowered for trigger in triggers):
            score = max(score, value)

    if any(keyword in lowered for keyword in URGENCY_KEYWORDS):
        score = min(score + 0.1, 1.0)
    if any(keyword in lowered for keyword in DOUBT_KEYWORDS):
        score = max(score - 0.1, 0.0)

    return round(score, 2)


def load_cross_selling(file_path: Optional[str] = None) -> CrossSellTable:
    """Read the cross_selling block of the products file."""
    path = Path(file_path or config.PRODUCTS_PATH)

    with open(path, 'r', encoding='utf-8') as f:
        data = json.load(f)

    return {
        product_id: [CrossSellEntry(**entry) for entry in entries]
        for product_id, entries in data.get('cross_selling', {}).items()
    }


class RecommendationEngine:
    """Priority-ordered cross-sell candidates for the product being bought."""

    def __init__(
        self,
        catalog: ProductCatalog,
        cross_selling: CrossSellTable,
        max_results: int = config.MAX_RECOMMENDATIONS,
        high_intent_threshold: float = config.HIGH_INTENT_THRESHOLD,
    ):
        if max_results < 1:
            raise ValueError("max_results must be at least 1")
        self.catalog = catalog
        self.cross_selling = cross_selling
        self.max_results = max_results
        self.high_intent_threshold = high_intent_threshold

    def recommend(
        self,
        current_product_id: str,
        intent_score: float,
        exclude: Iterable[str] = (),
    ) -> List[Recommendation]:
        """
        Candidates for current_product_id, best first.

        A confident buyer (intent above the threshold) only gets the top 2;
        everyone else gets up to max_results.
        """
        excluded = set(exclude) | {current_product_id}
        entries = sorted(self.cross_selling.get(current_product_id, []), key=lambda e: e.priority)

        recommendations = []
        for entry in entries:
            if entry.product_id in excluded:
                continue
            product = self.catalog.get(entry.product_id)
            if product is None:
                logger.warning("Cross-sell entry %s -> %s has no catalog product", current_product_id, entry.product_id)
                continue
            recommendations.append(Recommendation(
                product_id=product.product_id,
                name=product.name,
                reason=self._reason(current_product_id, product.category),
                priority=entry.priority,
            ))

        limit = min(2, self.max_results) if intent_score > self.high_intent_threshold else self.max_results
        return recommendations[:limit]

    def _reason(self, current_product_id: str, category: str) -> str:
        current = self.catalog.get(current_product_id)
        if current is not None and current.category == category:
            return f"Often bought together with the {current.name}"
        return f"Customers who chose this game also liked our {category.lower()} edition"
