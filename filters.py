from datetime import datetime

CURRENCY_SYMBOLS = {'USD': '$', 'GBP': '£', 'EUR': '€'}


def time_ago(dt, now=None):
    """
    Returns a human-readable time difference between now and the given datetime.
    """
    if not dt:
        return ""

    diff = (now or datetime.utcnow()) - dt
    seconds = diff.total_seconds()

    intervals = {
        'year': 31536000,
        'month': 2592000,
        'week': 604800,
        'day': 86400,
        'hour': 3600,
        'minute': 60,
    }

    for unit, seconds_in_unit in intervals.items():
        interval = int(seconds // seconds_in_unit)
        if interval >= 1:
            return f"{pluralize(interval, unit)} ago"

    return "just now"


def format_date(dt, format_str='%b %d, %Y'):
    """Format a datetime object as a string."""
    if not dt:
        return ""
    return dt.strftime(format_str)


def format_currency(amount, currency='USD'):
    """Format a number as currency."""
    if amount is None:
        return ""
    symbol = CURRENCY_SYMBOLS.get((currency or 'USD').upper())
    if symbol is None:
        return f"{amount:,.2f} {currency.upper()}"
    return f"{symbol}{amount:,.2f}"


def pluralize(count, singular, plural=None):
    """Return the singular or plural form based on the count."""
    if not plural:
        plural = singular + 's'
    return f"{count} {singular if count == 1 else plural}"
