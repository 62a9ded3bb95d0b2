from datetime import datetime, date, timedelta

METRICS_REGISTRY = {
    # --- Population ---
    'birds_alive': {'label': 'Birds Alive (Start of Day)', 'unit': '', 'type': 'derived'},
    'mortality': {'label': 'Mortality (Count)', 'unit': '', 'type': 'raw'},
    'daily_mortality_rate': {'label': 'Daily Mortality (%)', 'unit': '%', 'type': 'derived'},
    'cumulative_mortality_rate': {'label': 'Cum. Mortality (%)', 'unit': '%', 'type': 'derived'},

    # --- Feed / Water / Growth ---
    'feed_consumed_kg': {'label': 'Feed Consumed (Kg)', 'unit': 'Kg', 'type': 'raw'},
    'cumulative_feed_kg': {'label': 'Cum. Feed (Kg)', 'unit': 'Kg', 'type': 'derived'},
    'fcr': {'label': 'Feed Conversion Ratio', 'unit': '', 'type': 'derived'},
    'water_consumed_l': {'label': 'Water Consumed (L)', 'unit': 'L', 'type': 'raw'},
    'avg_weight_g': {'label': 'Avg Body Weight (g)', 'unit': 'g', 'type': 'raw'},

    # --- Production ---
    'egg_production': {'label': 'Total Eggs', 'unit': '', 'type': 'raw'},
    'hen_day_pct': {'label': 'Hen-Day (%)', 'unit': '%', 'type': 'derived'},
    'hen_day_pct_7d': {'label': 'Hen-Day 7d Avg (%)', 'unit': '%', 'type': 'derived'},
    'hen_housed_pct': {'label': 'Hen-Housed (%)', 'unit': '%', 'type': 'derived'},
    'rejected': {'label': 'Rejected Eggs', 'unit': '', 'type': 'derived'},
    'saleable': {'label': 'Saleable Eggs', 'unit': '', 'type': 'derived'},
    'quality_pct': {'label': 'Egg Quality (%)', 'unit': '%', 'type': 'derived'},
}

LOG_FIELDS = (
    'day', 'date', 'mortality', 'mortality_reason', 'feed_consumed_kg',
    'water_consumed_l', 'avg_weight_g', 'egg_details', 'notes', 'mortality_image',
)

def round_safe(val, digits=2):
    if val is None: return 0.0
    try:
        return round(float(val), digits)
    except (ValueError, TypeError):
        return 0.0

def safe_div(num, den, multiplier=100.0):
    if den and den > 0:
        return (num / den) * multiplier
    return 0.0

def _count(value):
    return value or 0

def _as_date(value):
    if value is None or isinstance(value, datetime):
        return value.date() if value else None
    if isinstance(value, date):
        return value
    try:
        return datetime.strptime(str(value), '%Y-%m-%d').date()
    except ValueError:
        return None

def _sorted_by_day(logs):
    # Stable: logs sharing a day keep caller order
    return sorted(logs or [], key=lambda x: _count(x.day))

def rejected_eggs(egg_details):
    """Damaged eggs over both collection shifts; 0 when no breakdown was captured."""
    if not egg_details:
        return 0
    total = 0
    for shift in ('morning', 'afternoon'):
        session = egg_details.get(shift) or {}
        total += _count(session.get('damaged'))
    return total

def derive_enriched_logs(flock, logs):
    """
    Turns a flock's daily logs into per-day production rows.

    Population is tracked at the start of each day: a day's own mortality only
    affects the following day. Logs are processed ascending by day whatever
    order the caller passes them in; neither the flock nor the logs are touched.
    """
    initial = _count(flock.initial_count)
    cumulative_mortality = 0

    enriched = []
    for log in _sorted_by_day(logs):
        eggs = _count(getattr(log, 'egg_production', None))

        # --- Start of Day ---
        birds_alive = initial - cumulative_mortality

        hen_day_pct = safe_div(eggs, birds_alive)
        hen_housed_pct = safe_div(eggs, initial)

        cumulative_mortality += _count(log.mortality)

        # --- Quality ---
        rejected = rejected_eggs(getattr(log, 'egg_details', None))
        saleable = max(0, eggs - rejected)

        d = {f: getattr(log, f, None) for f in LOG_FIELDS}
        d.update({
            'log': log,
            'mortality': _count(log.mortality),
            'egg_production': eggs,
            'birds_alive': birds_alive,
            'hen_day_pct': hen_day_pct,
            'hen_housed_pct': hen_housed_pct,
            'rejected': rejected,
            'saleable': saleable,
            'quality_pct': safe_div(saleable, eggs),
        })
        enriched.append(d)

    return enriched

def summarize(enriched_logs):
    production_days = [d for d in enriched_logs if d['egg_production'] > 0]
    count = len(production_days)

    return {
        'total_production': sum(d['egg_production'] for d in enriched_logs),
        'production_days': count,
        'avg_hen_day_pct': sum(d['hen_day_pct'] for d in production_days) / count if count else 0.0,
        'avg_hen_housed_pct': sum(d['hen_housed_pct'] for d in production_days) / count if count else 0.0,
        'max_daily_production': max((d['egg_production'] for d in production_days), default=0),
        'total_rejected': sum(d['rejected'] for d in enriched_logs),
        'total_saleable': sum(d['saleable'] for d in enriched_logs),
    }

def trailing_average(values, window=7):
    """Mean of each value and up to window-1 predecessors (shorter history is not padded)."""
    result = []
    for i in range(len(values)):
        subset = values[max(0, i - window + 1):i + 1]
        result.append(sum(subset) / len(subset))
    return result

def derive_flock_overview_metrics(flock, logs):
    """
    Per-day overview rows for the flock detail view.

    'birds_alive' is a start-of-day gauge (excludes the day's deaths) while
    'cumulative_mortality_rate' is an end-of-day gauge (includes them).
    """
    initial = _count(flock.initial_count)
    cum_mortality = 0
    cum_feed = 0.0

    rows = []
    for log in _sorted_by_day(logs):
        mortality = _count(log.mortality)
        feed = _count(log.feed_consumed_kg)
        weight = _count(log.avg_weight_g)
        eggs = _count(getattr(log, 'egg_production', None))

        birds_alive = initial - cum_mortality
        cum_mortality += mortality
        cum_feed += feed

        # FCR = Cumulative Feed / Live Biomass at end of day
        biomass_kg = ((birds_alive - mortality) * weight) / 1000.0

        rows.append({
            'day': log.day,
            'date': log.date,
            'label': f"Day {log.day}",
            'birds_alive': birds_alive,
            'mortality': mortality,
            'daily_mortality_rate': safe_div(mortality, birds_alive),
            'cumulative_mortality': cum_mortality,
            'cumulative_mortality_rate': safe_div(cum_mortality, initial),
            'egg_production': eggs,
            'hen_day_pct': safe_div(eggs, birds_alive),
            'feed_consumed_kg': feed,
            'cumulative_feed_kg': cum_feed,
            'water_consumed_l': _count(log.water_consumed_l),
            'avg_weight_g': weight,
            'fcr': safe_div(cum_feed, biomass_kg, multiplier=1.0),
        })

    for row, avg in zip(rows, trailing_average([r['hen_day_pct'] for r in rows], 7)):
        row['hen_day_pct_7d'] = avg

    return rows

def newest_first(rows):
    return list(reversed(rows))

def chart_moving_average(values):
    """
    Returns (period, series) for the dashed trend line on charts.
    Dense daily series get a 7-point average, sparser ones 3, short ones none.
    """
    n = len(values)
    if n >= 30:
        period = 7
    elif n >= 10:
        period = 3
    else:
        return 0, []

    series = []
    for i in range(n):
        if i < period - 1:
            series.append(None)
            continue
        subset = values[i - period + 1:i + 1]
        series.append(sum(subset) / period)
    return period, series

def aggregate_trend(flock, overview_rows, mode='daily'):
    """
    Groups overview rows into weekly or monthly trend points.
    Rows must already be ascending; groups come out in first-seen order.
    """
    if mode == 'daily':
        return overview_rows

    start = _as_date(getattr(flock, 'start_date', None))
    groups = {}

    for r in overview_rows:
        d = _as_date(r['date'])
        if mode == 'weekly':
            if d is None or start is None: continue
            key = f"Week {(d - start).days // 7 + 1}"
        else:
            if d is None: continue
            key = d.strftime('%b %y')

        groups.setdefault(key, []).append(r)

    result = []
    for label, rows in groups.items():
        last = rows[-1]
        n = len(rows)
        result.append({
            'label': label,
            'date': last['date'],
            'mortality': sum(r['mortality'] for r in rows),
            'egg_production': sum(r['egg_production'] for r in rows),
            'avg_weight_g': sum(r['avg_weight_g'] for r in rows) / n,
            'fcr': last['fcr'], # cumulative, so end of period
            'daily_mortality_rate': sum(r['daily_mortality_rate'] for r in rows) / n,
        })

    return result

def flock_age_days(flock, today=None):
    today = today or date.today()
    start = _as_date(flock.start_date)
    days = (today - start).days if start else 0
    return max(0, days) + _count(flock.initial_age_days)

def _latest_log(logs):
    ordered = _sorted_by_day(logs)
    return ordered[-1] if ordered else None

def dashboard_metrics(flocks):
    active = [f for f in flocks if f.status == 'Active']

    today = {'eggs': 0, 'feed_kg': 0.0, 'mortality': 0, 'water_l': 0.0}
    placed = 0
    deaths = 0

    for f in active:
        placed += _count(f.initial_count)
        deaths += sum(_count(l.mortality) for l in f.logs)

        last = _latest_log(f.logs)
        if last:
            today['eggs'] += _count(last.egg_production)
            today['feed_kg'] += _count(last.feed_consumed_kg)
            today['mortality'] += _count(last.mortality)
            today['water_l'] += _count(last.water_consumed_l)

    return {
        'total_birds': sum(_count(f.current_count) for f in active),
        'active_flocks': len(active),
        'today': today,
        'mortality_rate': safe_div(deaths, placed),
    }

def egg_production_trend(flocks, today=None, days=7):
    today = today or date.today()
    layers = [f for f in flocks if f.status == 'Active' and f.bird_type == 'Layer']

    trend = []
    for i in range(days - 1, -1, -1):
        d = today - timedelta(days=i)
        total = 0
        for f in layers:
            for log in f.logs:
                if _as_date(log.date) == d:
                    total += _count(getattr(log, 'egg_production', None))
        trend.append({'label': d.strftime('%a'), 'date': d.isoformat(), 'value': total})

    return trend
