from datetime import datetime, date
import math
import re
from sqlalchemy import or_, String, cast
from dateutil import parser as date_parser, tz
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

LEGAL_AREAS = ['employment', 'contract', 'property', 'family', 'criminal', 'tort', 'commercial']
ACTIVE_TICKET_STATUSES = ('open', 'in_progress', 'pending')


def get_pagination(page, per_page=25, max_per_page=100):
    """Helper function to get pagination parameters."""
    return {
        'page': max(1, int(page) if str(page).isdigit() else 1),
        'per_page': min(max_per_page, max(1, int(per_page) if str(per_page).isdigit() else 25))
    }


def total_pages(total, per_page):
    if not per_page:
        return 0
    return int(math.ceil(total / float(per_page)))


def split_list_arg(value):
    """Accept a list or a comma separated string and return a clean list."""
    if value is None:
        return []
    if isinstance(value, (list, tuple, set)):
        items = value
    else:
        items = str(value).split(',')
    return [str(v).strip() for v in items if str(v).strip()]


def parse_datetime(value):
    """Parse an ISO-ish date/time string; returns None for blanks and garbage."""
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    try:
        parsed = date_parser.isoparse(str(value))
    except (ValueError, OverflowError):
        try:
            parsed = date_parser.parse(str(value))
        except (ValueError, OverflowError):
            return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(tz.tzutc()).replace(tzinfo=None)
    return parsed


def truncate(text, limit, suffix='...'):
    if text is None:
        return ''
    if len(text) <= limit:
        return text
    return text[:limit - len(suffix)] + suffix


def apply_ticket_filters(query, filters):
    """Apply ticket list filters (lists are OR'ed, filters are AND'ed)."""
    from models import Ticket  # Import here to avoid circular imports

    filters = filters or {}

    statuses = split_list_arg(filters.get('status'))
    if statuses:
        query = query.filter(Ticket.status.in_(statuses))

    priorities = split_list_arg(filters.get('priority'))
    if priorities:
        query = query.filter(Ticket.priority.in_(priorities))

    assignees = split_list_arg(filters.get('assigned_to'))
    if assignees:
        ids = [int(a) for a in assignees if a.isdigit()]
        clauses = []
        if ids:
            clauses.append(Ticket.assigned_to_id.in_(ids))
        if 'unassigned' in assignees:
            clauses.append(Ticket.assigned_to_id.is_(None))
        if clauses:
            query = query.filter(or_(*clauses))

    categories = [int(c) for c in split_list_arg(filters.get('category_id')) if c.isdigit()]
    if categories:
        query = query.filter(Ticket.category_id.in_(categories))

    case_id = filters.get('case_id')
    if case_id and str(case_id).isdigit():
        query = query.filter(Ticket.case_id == int(case_id))

    client_id = filters.get('client_id')
    if client_id and str(client_id).isdigit():
        query = query.filter(Ticket.client_id == int(client_id))

    source = filters.get('source')
    if source:
        query = query.filter(Ticket.source == source)

    created_from = parse_datetime(filters.get('created_date_from'))
    if created_from:
        query = query.filter(Ticket.created_at >= created_from)
    created_to = parse_datetime(filters.get('created_date_to'))
    if created_to:
        query = query.filter(Ticket.created_at <= created_to)

    search = (filters.get('search') or '').strip()
    if search:
        like = f"%{search}%"
        query = query.filter(
            or_(
                Ticket.title.ilike(like),
                Ticket.description.ilike(like),
                Ticket.ticket_number.ilike(like),
            )
        )

    tags = split_list_arg(filters.get('tags'))
    if tags:
        query = query.filter(or_(*[cast(Ticket.tags, String).ilike(f'%"{tag}"%') for tag in tags]))

    sla_breached = filters.get('sla_breached')
    if str(sla_breached).lower() in ('true', '1', 'yes'):
        query = query.filter(
            Ticket.sla_due_date.isnot(None),
            Ticket.sla_due_date < datetime.utcnow(),
            Ticket.status.in_(ACTIVE_TICKET_STATUSES),
        )

    return query


def get_sort_params(sort_field, sort_direction, mapping, default_field='created_at'):
    """Resolve a sort column from a whitelist mapping; unknown fields use the default."""
    column = mapping.get(sort_field or default_field) or mapping[default_field]
    direction = 'asc' if str(sort_direction or '').lower() == 'asc' else 'desc'
    return column, direction


def extract_entities(text):
    """Extract entities using regex patterns."""
    if not text:
        return {}

    patterns = {
        'dates': r'\b(?:Jan(?:uary)?|Feb(?:ruary)?|Mar(?:ch)?|Apr(?:il)?|May|Jun(?:e)?|Jul(?:y)?|Aug(?:ust)?|Sep(?:tember)?|Oct(?:ober)?|Nov(?:ember)?|Dec(?:ember)?)\s+\d{1,2}(?:st|nd|rd|th)?,?\s+\d{4}\b|\b\d{1,2}[/-]\d{1,2}[/-]\d{2,4}\b|\b\d{4}-\d{2}-\d{2}\b',
        'emails': r'\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b',
        'phone_numbers': r'\b(?:\+?\d{1,3}[-.\s]?)?\(?\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4}\b',
        'amounts': r'[$£€]\s?\d[\d,]*(?:\.\d{1,2})?|\b\d+\s*(?:dollars|pounds|USD|GBP)\b',
        'case_references': r'\b[A-Z]{2,}-\d{4}-\d{3,}\b|\[\d{4}\]\s+[A-Z]+\s+(?:Civ\s+)?\d+',
    }

    entities = {}
    for entity_type, pattern in patterns.items():
        matches = re.findall(pattern, text, re.IGNORECASE)
        if matches:
            entities[entity_type] = sorted(set(m.strip() for m in matches))

    return entities


DOCUMENT_CATEGORY_KEYWORDS = {
    'contract': {
        'agreement': 2, 'contract': 2, 'party': 1, 'parties': 1, 'clause': 2, 'termination': 1,
        'indemnity': 2, 'warranty': 2, 'governing law': 2, 'consideration': 1
    },
    'court_filing': {
        'court': 2, 'motion': 2, 'plaintiff': 2, 'defendant': 2, 'claimant': 2, 'respondent': 1,
        'hearing': 1, 'order': 1, 'judgment': 2, 'tribunal': 2
    },
    'correspondence': {
        'dear': 2, 'sincerely': 2, 'regards': 1, 'letter': 1, 'writing to': 2, 'enclosed': 1
    },
    'financial': {
        'invoice': 2, 'payment': 2, 'amount due': 2, 'balance': 1, 'fee': 1, 'statement': 1, 'tax': 1
    },
    'property': {
        'property': 2, 'lease': 2, 'landlord': 2, 'tenant': 2, 'conveyancing': 2,
        'mortgage': 2, 'deed': 2, 'title': 1
    },
    'employment': {
        'employer': 2, 'employee': 2, 'dismissal': 2, 'discrimination': 2,
        'harassment': 2, 'wage': 2, 'redundancy': 2, 'contract of employment': 2
    },
}

RISK_KEYWORDS = {
    'high': ['penalty', 'unlimited liability', 'breach', 'injunction', 'deadline', 'limitation period',
             'indemnify', 'default', 'termination for convenience'],
    'medium': ['dispute', 'liability', 'damages', 'late payment', 'non-compete', 'exclusivity'],
}


def classify_document(text):
    """Classify document text using keyword weights. Returns (category, confidence)."""
    if not text or not text.strip():
        return 'other', 0.0

    lowered = text.lower()
    scores = {category: 0 for category in DOCUMENT_CATEGORY_KEYWORDS}
    for category, keywords in DOCUMENT_CATEGORY_KEYWORDS.items():
        for keyword, weight in keywords.items():
            if keyword in lowered:
                scores[category] += weight

    if not any(scores.values()):
        return 'other', 0.5

    best = max(scores, key=scores.get)
    confidence = min(1.0, scores[best] / 10.0)
    return best, confidence


def analyze_document_text(text):
    """Analyze document text and provide structured findings."""
    if not text or not text.strip():
        return {
            'category': 'other',
            'confidence': 0.0,
            'entities': {},
            'findings': ['Document has no extractable text'],
            'risk_level': 'low',
            'summary': 'No content provided.'
        }

    category, confidence = classify_document(text)
    entities = extract_entities(text)
    lowered = text.lower()

    findings = []
    risk_level = 'low'
    high_hits = [k for k in RISK_KEYWORDS['high'] if k in lowered]
    medium_hits = [k for k in RISK_KEYWORDS['medium'] if k in lowered]
    if high_hits:
        risk_level = 'high'
        findings.extend(f"High-risk term present: '{k}'" for k in high_hits)
    elif medium_hits:
        risk_level = 'medium'
    findings.extend(f"Review term: '{k}'" for k in medium_hits)

    if entities.get('dates'):
        findings.append(f"{len(entities['dates'])} date(s) referenced; confirm deadlines are diarised")
    if entities.get('amounts'):
        findings.append(f"Monetary amounts referenced: {', '.join(entities['amounts'][:3])}")

    areas = [area for area in LEGAL_AREAS if area in lowered]

    summary_parts = [f"Document classified as '{category.replace('_', ' ')}' with {int(confidence * 100)}% confidence."]
    if areas:
        summary_parts.append(f"Legal areas: {', '.join(areas)}.")
    if entities.get('dates'):
        summary_parts.append(f"Key dates identified: {', '.join(entities['dates'][:2])}.")

    return {
        'category': category,
        'confidence': confidence,
        'entities': entities,
        'findings': findings,
        'legal_areas': areas,
        'risk_level': risk_level,
        'summary': ' '.join(summary_parts)
    }


def infer_case_type(text):
    t = (text or '').lower()
    if any(k in t for k in ['employment', 'dismissal', 'tribunal']):
        return 'Employment Law'
    if any(k in t for k in ['property', 'conveyancing', 'purchase']):
        return 'Property Law'
    if any(k in t for k in ['divorce', 'custody', 'family']):
        return 'Family Law'
    if any(k in t for k in ['contract', 'commercial', 'business']):
        return 'Commercial Law'
    if any(k in t for k in ['criminal', 'prosecution', 'defence', 'defense']):
        return 'Criminal Law'
    return 'General Legal'


def render_placeholders(text, variables, keep_unknown=True):
    """Replace {{name}} / {{a.b}} placeholders from a (nested) dict."""
    if not text:
        return ''

    def lookup(path):
        current = variables
        for part in path.split('.'):
            if isinstance(current, dict) and part in current:
                current = current[part]
            else:
                return None
        return current

    def repl(match):
        value = lookup(match.group(1).strip())
        if value is None:
            return match.group(0) if keep_unknown else ''
        return str(value)

    return re.sub(r'\{\{\s*([\w.]+)\s*\}\}', repl, text)


def extract_placeholders(text):
    """Return unique placeholder names in order of first appearance."""
    seen = []
    for name in re.findall(r'\{\{\s*([\w.]+)\s*\}\}', text or ''):
        if name not in seen:
            seen.append(name)
    return seen
