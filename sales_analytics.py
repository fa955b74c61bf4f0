import logging
from collections import defaultdict
from datetime import datetime, timedelta, timezone

import numpy as np
from sklearn.ensemble import RandomForestRegressor

from restock_engine import parse_timestamp

logger = logging.getLogger(__name__)

HISTORY_DAYS = 90
MIN_HISTORY_DAYS = 14
MAX_FORECAST_DAYS = 90

# ============================================================================
# SALES DASHBOARD
# ============================================================================

def order_total(order, prices):
    """Value of an order at the current unit prices (unknown products count as 0)."""
    return sum(prices.get(item['product_id'], 0) * item['quantity'] for item in order['items'])


def daily_revenue(orders, products, days, now=None):
    """Completed-order revenue per day for the last ``days`` days, oldest first."""
    now = now or datetime.now(timezone.utc)
    prices = {p['id']: p['price'] for p in products}

    buckets = {}
    for i in range(days - 1, -1, -1):
        buckets[(now - timedelta(days=i)).strftime('%d/%m')] = 0.0

    cutoff = now - timedelta(days=days)
    for order in orders:
        if order['status'] != 'completed':
            continue
        created = parse_timestamp(order['created_at'])
        if created < cutoff:
            continue
        label = created.strftime('%d/%m')
        if label in buckets:
            buckets[label] += order_total(order, prices)

    return [{'date': label, 'total': round(total, 2)} for label, total in buckets.items()]


def sales_summary(orders, products, now=None):
    weekly = daily_revenue(orders, products, 7, now)
    monthly = daily_revenue(orders, products, 30, now)
    return {
        'weekly': weekly,
        'monthly': monthly,
        'weekly_total': round(sum(d['total'] for d in weekly), 2),
        'monthly_total': round(sum(d['total'] for d in monthly), 2),
    }

# ============================================================================
# MACHINE LEARNING FORECASTING ENGINE
# ============================================================================

def daily_sales_history(product_id, orders, now=None, days=HISTORY_DAYS):
    """(date, units) pairs for each day with completed sales of a product, oldest first."""
    now = now or datetime.now(timezone.utc)
    start = (now - timedelta(days=days)).date()
    today = now.date()

    per_day = defaultdict(int)
    for order in orders:
        if order['status'] != 'completed':
            continue
        sale_date = parse_timestamp(order['created_at']).date()
        if not (start <= sale_date < today):
            continue
        for item in order['items']:
            if item['product_id'] == product_id:
                per_day[sale_date] += item['quantity']

    return [(d.strftime('%Y-%m-%d'), qty) for d, qty in sorted(per_day.items()) if qty > 0]


def _features(dt, lag_1, lag_7, recent_avg):
    return [dt.weekday(), dt.day, dt.isocalendar()[1], dt.month, lag_1, lag_7, recent_avg]


def generate_ml_forecast(history, days=30, now=None):
    """
    Forecast daily demand with a Random Forest Regressor trained on sales history.
    Uses time-series features: day of week, day of month, week of year, lag features.

    Returns a list of forecast dictionaries, or None when the history is too short.
    """
    if len(history) < MIN_HISTORY_DAYS:
        return None
    days = min(MAX_FORECAST_DAYS, max(1, days))
    now = now or datetime.now(timezone.utc)

    X_train = []
    y_train = []
    for i, (date_str, qty) in enumerate(history):
        dt = datetime.strptime(date_str, '%Y-%m-%d')
        lag_1 = history[i-1][1] if i >= 1 else qty
        lag_7 = history[i-7][1] if i >= 7 else qty
        recent_avg = np.mean([history[j][1] for j in range(i-7, i)]) if i >= 7 else qty
        X_train.append(_features(dt, lag_1, lag_7, recent_avg))
        y_train.append(qty)

    rf_model = RandomForestRegressor(
        n_estimators=100,
        max_depth=10,
        random_state=42,
        n_jobs=-1
    )
    rf_model.fit(X_train, y_train)

    quantities = [float(qty) for _, qty in history]
    mean_demand = np.mean(quantities)
    std_demand = np.std(quantities)

    # Day-of-week seasonality, reported as season_factor
    day_quantities = defaultdict(list)
    for date_str, qty in history:
        day_quantities[datetime.strptime(date_str, '%Y-%m-%d').weekday()].append(qty)
    overall_avg = mean_demand if mean_demand > 0 else 1
    day_factors = {
        day: (np.mean(day_quantities[day]) / overall_avg) if day_quantities[day] else 1.0
        for day in range(7)
    }

    last_qty = quantities[-1]
    last_7_qty = quantities[-7] if len(quantities) >= 7 else last_qty
    last_7_avg = np.mean(quantities[-7:]) if len(quantities) >= 7 else mean_demand

    market_factor = last_7_avg / mean_demand if mean_demand > 0 else 1.0
    market_factor = max(0.5, min(1.5, market_factor))
    cv = std_demand / mean_demand if mean_demand > 0 else 1.0
    confidence = max(0.6, min(0.95, 1.0 - cv * 0.3))

    forecasts = []
    for i in range(days):
        forecast_date = now + timedelta(days=i+1)
        lag_1 = forecasts[-1]['predicted_demand'] if forecasts else last_qty
        lag_7 = forecasts[-7]['predicted_demand'] if len(forecasts) >= 7 else last_7_qty
        if len(forecasts) >= 7:
            recent_avg = np.mean([f['predicted_demand'] for f in forecasts[-7:]])
        else:
            recent_avg = last_7_avg

        predicted_demand = max(0.0, float(rf_model.predict([_features(forecast_date, lag_1, lag_7, recent_avg)])[0]))

        forecasts.append({
            'forecast_date': forecast_date.strftime('%Y-%m-%d'),
            'predicted_demand': round(predicted_demand, 2),
            'season_factor': round(float(day_factors[forecast_date.weekday()]), 3),
            'market_factor': round(float(market_factor), 3),
            'confidence_level': round(float(confidence), 3)
        })

    return forecasts


def forecast_product(product_id, orders, days=30, now=None):
    history = daily_sales_history(product_id, orders, now)
    forecasts = generate_ml_forecast(history, days, now)
    if forecasts is None:
        logger.info('Not enough sales history to forecast product %s (%s days)', product_id, len(history))
    return history, forecasts
