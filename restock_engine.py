"""
Restock zone classification and AI-written restock recommendations.

Zones are decided locally from sales velocity, stock and expiration date;
the generative model only writes the recommendation text and confidence
label. Any model failure falls back to a conservative yellow/low alert.
"""

import os
import json
import math
import logging
from datetime import date, datetime, timedelta, timezone
from textwrap import dedent

import numpy as np
from anthropic import Anthropic

logger = logging.getLogger(__name__)

DEFAULT_MODEL = 'claude-3-7-sonnet-20250219'

SALES_WINDOW_DAYS = 30
LOW_STOCK_RED = 20
LOW_STOCK_YELLOW = 50
RED_DAYS_OF_STOCK = 7
YELLOW_DAYS_OF_STOCK = 21
EXPIRATION_ALERT_DAYS = 14

ZONES = ('green', 'yellow', 'red')

FALLBACK_ALERT = {
    'zone': 'yellow',
    'restock_recommendation': 'Não foi possível obter a recomendação. Verifique o estoque manualmente.',
    'confidence_level': 'low',
}

NO_SALES_RECOMMENDATIONS = {
    'red': 'Estoque baixo. Considere reabastecer para evitar rupturas.',
    'yellow': 'Nível de atenção. O estoque está diminuindo.',
    'green': 'Nenhuma ação necessária. Monitore as vendas.',
}

# ============================================================================
# SALES VELOCITY & ZONES
# ============================================================================

def parse_timestamp(value):
    dt = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def recent_units_sold(product_id, orders, now=None, window_days=SALES_WINDOW_DAYS):
    """Units of a product in completed orders created within the trailing window."""
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(days=window_days)
    quantities = [
        item['quantity']
        for order in orders
        if order['status'] == 'completed' and parse_timestamp(order['created_at']) >= cutoff
        for item in order['items']
        if item['product_id'] == product_id
    ]
    return int(np.sum(quantities)) if quantities else 0


def weekly_sales_velocity(product_id, orders, now=None):
    """Average units sold per week over the last 30 days."""
    return recent_units_sold(product_id, orders, now) / SALES_WINDOW_DAYS * 7


def days_of_stock_left(quantity, velocity):
    if velocity <= 0:
        return math.inf
    return quantity / (velocity / 7)


def days_until(expiration_date, today=None):
    today = today or date.today()
    expires = datetime.strptime(str(expiration_date)[:10], '%Y-%m-%d').date()
    return (expires - today).days


def classify_zone(quantity, velocity, days_to_expiration):
    """Three-tier zone from stock, weekly velocity and days to expiration."""
    if velocity <= 0:
        if quantity <= LOW_STOCK_RED:
            return 'red'
        if quantity <= LOW_STOCK_YELLOW:
            return 'yellow'
        return 'green'

    stock_days = days_of_stock_left(quantity, velocity)
    if stock_days < RED_DAYS_OF_STOCK or days_to_expiration < EXPIRATION_ALERT_DAYS:
        return 'red'
    if stock_days <= YELLOW_DAYS_OF_STOCK:
        return 'yellow'
    return 'green'


def analyze_product(product, orders, now=None):
    """Numeric summary used both for the zone and for the model prompt."""
    now = now or datetime.now(timezone.utc)
    velocity = weekly_sales_velocity(product['id'], orders, now)
    stock_days = days_of_stock_left(product['quantity'], velocity)
    days_to_expiration = days_until(product['expiration_date'], now.date())
    return {
        'id': product['id'],
        'product_name': product['name'],
        'current_stock': product['quantity'],
        'expiration_date': product['expiration_date'],
        'days_to_expiration': days_to_expiration,
        'sales_velocity': round(velocity, 2),
        'days_of_stock_left': None if math.isinf(stock_days) else math.floor(stock_days),
        'zone': classify_zone(product['quantity'], velocity, days_to_expiration),
    }


def no_sales_alert(summary):
    return {
        'zone': summary['zone'],
        'restock_recommendation': NO_SALES_RECOMMENDATIONS[summary['zone']],
        'confidence_level': 'low',
    }

# ============================================================================
# PROMPTS
# ============================================================================

ZONE_RULES = dedent("""\
    - Red Zone: Less than 7 days of stock remaining or expiring in less than 14 days. This is critical.
    - Yellow Zone: Between 7 and 21 days of stock remaining. This requires attention.
    - Green Zone: More than 21 days of stock remaining. This is an ideal level.
    """)

SINGLE_ALERT_PROMPT = dedent("""\
    You are an AI inventory management expert for a beverage distributor. Your goal is to provide intelligent, data-driven restock recommendations.

    Analyze the following product data:

    - Product Name: {product_name}
    - Current Stock: {current_stock} units
    - Sales Velocity: Approximately {sales_velocity} units sold per week.
    - Estimated Days of Stock Left: {days_of_stock_left} days.
    - Expiration Date: {expiration_date}
    - Stock Zone: {zone}

    Zone rules:
    {zone_rules}
    The recommendation should be practical and easy to understand for a busy warehouse manager, written in Brazilian Portuguese.
    For example: "Com base nas vendas, você tem estoque para mais 15 dias. Recomenda-se fazer um novo pedido na próxima semana."

    OUTPUT FORMAT (valid JSON only, no markdown):
    {{"zone": "{zone}", "restock_recommendation": "...", "confidence_level": "high|medium|low"}}
    """)

BATCH_ALERT_PROMPT = dedent("""\
    You are an AI inventory management expert for a beverage distributor.

    For each of the following products, write a concise restock recommendation in Brazilian Portuguese
    and a confidence level (high, medium, low). The stock zone has already been computed.

    Zone rules:
    {zone_rules}
    PRODUCT DATA:
    {products}

    OUTPUT FORMAT (valid JSON array only, no markdown, one object per product, same ids):
    [{{"id": "...", "zone": "green|yellow|red", "restock_recommendation": "...", "confidence_level": "high|medium|low"}}]
    """)

SEARCH_PROMPT = dedent("""\
    You are a search assistant for a beverage distributor's inventory system. Your task is to find products
    relevant to the user's search query from a list of available product names.

    Search Query: "{query}"

    Available Products:
    {product_names}

    Return the product names that are a good match. The match should be fuzzy, accounting for typos,
    partial words and semantic similarity.

    OUTPUT FORMAT (valid JSON only, no markdown):
    {{"relevant_product_names": ["..."]}}
    """)


def parse_llm_json(response_text):
    """Parse JSON from a model answer, tolerating markdown code fences."""
    cleaned = response_text.strip()
    if cleaned.startswith('```'):
        parts = cleaned.split('```')
        if len(parts) >= 2:
            cleaned = parts[1]
            if cleaned.startswith('json'):
                cleaned = cleaned[4:]
            cleaned = cleaned.strip()
    return json.loads(cleaned)

# ============================================================================
# RESTOCK ADVISOR
# ============================================================================

class RestockAdvisor:
    """Wraps the generative model calls behind zone-aware fallbacks."""

    def __init__(self, client=None, model=None, max_tokens=2048):
        self._client = client
        self.model = model or os.getenv('RESTOCK_MODEL', DEFAULT_MODEL)
        self.max_tokens = max_tokens

    @property
    def client(self):
        if self._client is None:
            self._client = Anthropic()
        return self._client

    def _complete(self, prompt):
        response = self.client.messages.create(
            model=self.model,
            max_tokens=self.max_tokens,
            temperature=0.2,
            messages=[{'role': 'user', 'content': prompt}],
        )
        return response.content[0].text

    @staticmethod
    def _merge(summary, answer):
        if not isinstance(answer, dict) or not answer.get('restock_recommendation'):
            raise ValueError('model answer without restock_recommendation')
        return {
            'zone': summary['zone'],
            'restock_recommendation': str(answer['restock_recommendation']),
            'confidence_level': str(answer.get('confidence_level') or 'medium'),
        }

    def restock_alert(self, product, orders, now=None):
        """Alert for a single product."""
        try:
            summary = analyze_product(product, orders, now)
            if summary['sales_velocity'] == 0:
                return no_sales_alert(summary)
            prompt = SINGLE_ALERT_PROMPT.format(zone_rules=ZONE_RULES, **summary)
            return self._merge(summary, parse_llm_json(self._complete(prompt)))
        except Exception:
            logger.exception('Failed to get restock alert for %s', product.get('name'))
            return dict(FALLBACK_ALERT)

    def restock_alerts(self, products, orders, now=None):
        """Alerts for many products with one model call; returns a list parallel to ``products``."""
        alerts = {}
        pending = []
        for product in products:
            try:
                summary = analyze_product(product, orders, now)
            except Exception:
                logger.exception('Could not analyze product %s', product.get('id'))
                alerts[product['id']] = dict(FALLBACK_ALERT)
                continue
            if summary['sales_velocity'] == 0:
                alerts[product['id']] = no_sales_alert(summary)
            else:
                pending.append(summary)

        if pending:
            answers = {}
            try:
                prompt = BATCH_ALERT_PROMPT.format(zone_rules=ZONE_RULES,
                                                   products=json.dumps(pending, indent=2, ensure_ascii=False))
                answers = {str(a.get('id')): a for a in parse_llm_json(self._complete(prompt)) if isinstance(a, dict)}
            except Exception:
                logger.exception('Batch restock alert request failed for %s products', len(pending))
            for summary in pending:
                try:
                    alerts[summary['id']] = self._merge(summary, answers.get(summary['id']))
                except ValueError:
                    logger.warning('No model answer for product %s; using fallback', summary['id'])
                    alerts[summary['id']] = dict(FALLBACK_ALERT)

        return [alerts[product['id']] for product in products]

    def find_relevant_products(self, query, product_names):
        """Semantic search over product names; substring match when the model is unavailable."""
        query = (query or '').strip()
        if not query:
            return list(product_names)
        try:
            prompt = SEARCH_PROMPT.format(query=query,
                                          product_names='\n'.join(f'- {name}' for name in product_names))
            answer = parse_llm_json(self._complete(prompt))
            known = set(product_names)
            return [name for name in answer.get('relevant_product_names', []) if name in known]
        except Exception:
            logger.exception('Product search failed for query %r; using substring match', query)
            needle = query.casefold()
            return [name for name in product_names if needle in name.casefold()]


def products_with_status(products, orders, advisor, now=None):
    """Products augmented with zone, recommendation and confidence."""
    alerts = advisor.restock_alerts(products, orders, now)
    return [dict(product, **alert) for product, alert in zip(products, alerts)]
