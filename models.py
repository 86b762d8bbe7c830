from datetime import datetime
from flask_sqlalchemy import SQLAlchemy
from werkzeug.security import generate_password_hash, check_password_hash

db = SQLAlchemy()


def _iso(value):
    return value.isoformat() if value else None


class Firm(db.Model):
    """Law firm; every firm-owned row is scoped by firm_id"""
    __tablename__ = 'firm'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    slug = db.Column(db.String(100), unique=True, nullable=False)
    subscription_tier = db.Column(db.String(50), default='professional')
    settings = db.Column(db.JSON, default=dict)
    onboarding_completed = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'slug': self.slug,
            'subscription_tier': self.subscription_tier,
            'settings': self.settings or {},
            'onboarding_completed': self.onboarding_completed,
            'created_at': _iso(self.created_at),
        }


class User(db.Model):
    """Firm staff member (enterprise user) with role and department"""
    __tablename__ = 'user'

    id = db.Column(db.Integer, primary_key=True)
    firm_id = db.Column(db.Integer, db.ForeignKey('firm.id'), nullable=True)
    email = db.Column(db.String(120), unique=True, nullable=False)
    password_hash = db.Column(db.String(256), nullable=True)
    first_name = db.Column(db.String(50), nullable=False)
    last_name = db.Column(db.String(50), nullable=False)
    role = db.Column(db.String(20), default='staff')  # admin, partner, associate, paralegal, staff, client
    department = db.Column(db.String(50), nullable=True)
    level = db.Column(db.Integer, default=1)
    is_billable = db.Column(db.Boolean, default=False)
    is_active = db.Column(db.Boolean, default=True)
    mfa_enabled = db.Column(db.Boolean, default=False)
    last_login_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    firm = db.relationship('Firm', backref=db.backref('users', lazy=True))

    @property
    def full_name(self):
        return f"{self.first_name} {self.last_name}".strip()

    def set_password(self, password):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password):
        if not self.password_hash:
            return False
        return check_password_hash(self.password_hash, password)

    def to_dict(self):
        return {
            'id': self.id,
            'firm_id': self.firm_id,
            'email': self.email,
            'first_name': self.first_name,
            'last_name': self.last_name,
            'role': self.role,
            'department': self.department,
            'level': self.level,
            'is_billable': self.is_billable,
            'is_active': self.is_active,
            'mfa_enabled': self.mfa_enabled,
            'last_login_at': _iso(self.last_login_at),
        }


class Client(db.Model):
    """Client information model"""
    __tablename__ = 'client'

    id = db.Column(db.Integer, primary_key=True)
    firm_id = db.Column(db.Integer, db.ForeignKey('firm.id'), nullable=False)
    first_name = db.Column(db.String(50), nullable=False)
    last_name = db.Column(db.String(50), nullable=False)
    email = db.Column(db.String(120), nullable=True)
    phone = db.Column(db.String(30), nullable=True)
    address = db.Column(db.String(200), nullable=True)
    company = db.Column(db.String(200), nullable=True)
    external_id = db.Column(db.String(100), nullable=True)  # id in the billing system
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    cases = db.relationship('Case', back_populates='client', cascade='all, delete-orphan')

    @property
    def full_name(self):
        return f"{self.first_name} {self.last_name}".strip()

    def to_dict(self):
        return {
            'id': self.id,
            'firm_id': self.firm_id,
            'first_name': self.first_name,
            'last_name': self.last_name,
            'email': self.email,
            'phone': self.phone,
            'address': self.address,
            'company': self.company,
            'external_id': self.external_id,
            'case_count': len(self.cases),
        }


class Case(db.Model):
    """Legal matter"""
    __tablename__ = 'case'

    id = db.Column(db.Integer, primary_key=True)
    firm_id = db.Column(db.Integer, db.ForeignKey('firm.id'), nullable=False)
    client_id = db.Column(db.Integer, db.ForeignKey('client.id'), nullable=True)
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text)
    case_number = db.Column(db.String(100), nullable=True)
    case_type = db.Column(db.String(100))
    status = db.Column(db.String(50), default='open')  # open, in_progress, pending, closed
    priority = db.Column(db.String(20), default='medium')
    court = db.Column(db.String(200), nullable=True)
    jurisdiction = db.Column(db.String(100), nullable=True)
    assigned_to_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    created_by_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    closed_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    client = db.relationship('Client', back_populates='cases')
    assigned_user = db.relationship('User', foreign_keys=[assigned_to_id])
    creator = db.relationship('User', foreign_keys=[created_by_id])
    documents = db.relationship('Document', back_populates='case')

    def to_dict(self):
        return {
            'id': self.id,
            'firm_id': self.firm_id,
            'title': self.title,
            'description': self.description,
            'case_number': self.case_number,
            'case_type': self.case_type,
            'status': self.status,
            'priority': self.priority,
            'court': self.court,
            'jurisdiction': self.jurisdiction,
            'client': self.client.to_dict() if self.client else None,
            'assigned_to': self.assigned_user.to_dict() if self.assigned_user else None,
            'document_count': len(self.documents),
            'closed_at': _iso(self.closed_at),
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }


class Document(db.Model):
    """Document stored for a firm, optionally linked to a case"""
    __tablename__ = 'document'

    id = db.Column(db.Integer, primary_key=True)
    firm_id = db.Column(db.Integer, db.ForeignKey('firm.id'), nullable=False)
    case_id = db.Column(db.Integer, db.ForeignKey('case.id'), nullable=True)
    name = db.Column(db.String(200), nullable=False)
    file_path = db.Column(db.String(500), nullable=True)
    file_type = db.Column(db.String(50), nullable=True)
    file_size = db.Column(db.Integer, nullable=True)
    description = db.Column(db.Text, nullable=True)
    content = db.Column(db.Text, nullable=True)
    tags = db.Column(db.JSON, default=list)
    uploaded_by_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    case = db.relationship('Case', back_populates='documents')
    uploaded_by = db.relationship('User')

    def to_dict(self):
        return {
            'id': self.id,
            'firm_id': self.firm_id,
            'case_id': self.case_id,
            'name': self.name,
            'file_type': self.file_type,
            'file_size': self.file_size,
            'description': self.description,
            'tags': self.tags or [],
            'uploaded_by': self.uploaded_by.to_dict() if self.uploaded_by else None,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }


# ==================== TICKETING ====================

class TicketCategory(db.Model):
    __tablename__ = 'ticket_category'

    id = db.Column(db.Integer, primary_key=True)
    firm_id = db.Column(db.Integer, db.ForeignKey('firm.id'), nullable=False)
    name = db.Column(db.String(100), nullable=False)
    description = db.Column(db.Text, nullable=True)
    color = db.Column(db.String(20), default='#6b7280')
    icon = db.Column(db.String(50), nullable=True)
    sla_hours = db.Column(db.Integer, nullable=True)
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'firm_id': self.firm_id,
            'name': self.name,
            'description': self.description,
            'color': self.color,
            'icon': self.icon,
            'sla_hours': self.sla_hours,
            'is_active': self.is_active,
        }


class Ticket(db.Model):
    """Work item tracked through open -> in_progress -> resolved -> closed"""
    __tablename__ = 'ticket'
    __table_args__ = (db.UniqueConstraint('firm_id', 'ticket_number', name='uq_ticket_firm_number'),)

    id = db.Column(db.Integer, primary_key=True)
    firm_id = db.Column(db.Integer, db.ForeignKey('firm.id'), nullable=False)
    ticket_number = db.Column(db.String(30), nullable=False)
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    short_description = db.Column(db.String(160), nullable=True)
    priority = db.Column(db.String(20), default='medium')  # critical, high, medium, low
    status = db.Column(db.String(20), default='open')  # open, in_progress, pending, resolved, closed, cancelled
    source = db.Column(db.String(20), default='manual')
    category_id = db.Column(db.Integer, db.ForeignKey('ticket_category.id'), nullable=True)
    case_id = db.Column(db.Integer, db.ForeignKey('case.id'), nullable=True)
    client_id = db.Column(db.Integer, db.ForeignKey('client.id'), nullable=True)
    assigned_to_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    created_by_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)

    ai_confidence_score = db.Column(db.Float, nullable=True)
    ai_generated_tags = db.Column(db.JSON, default=list)
    ai_context = db.Column(db.JSON, default=dict)

    sla_due_date = db.Column(db.DateTime, nullable=True)
    resolved_at = db.Column(db.DateTime, nullable=True)
    closed_at = db.Column(db.DateTime, nullable=True)
    first_response_at = db.Column(db.DateTime, nullable=True)

    tags = db.Column(db.JSON, default=list)
    custom_fields = db.Column(db.JSON, default=dict)
    estimated_hours = db.Column(db.Float, nullable=True)
    actual_hours = db.Column(db.Float, nullable=True)
    work_notes = db.Column(db.Text, nullable=True)
    close_notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    category = db.relationship('TicketCategory', backref=db.backref('tickets', lazy=True))
    case = db.relationship('Case', backref=db.backref('tickets', lazy=True))
    client = db.relationship('Client', backref=db.backref('tickets', lazy=True))
    assigned_to = db.relationship('User', foreign_keys=[assigned_to_id])
    created_by = db.relationship('User', foreign_keys=[created_by_id])
    comments = db.relationship('TicketComment', back_populates='ticket', cascade='all, delete-orphan',
                               order_by='TicketComment.created_at')

    def is_sla_breached(self, now=None):
        if not self.sla_due_date or self.status in ('resolved', 'closed', 'cancelled'):
            return False
        return self.sla_due_date < (now or datetime.utcnow())

    def to_dict(self, include_comments=False):
        data = {
            'id': self.id,
            'firm_id': self.firm_id,
            'ticket_number': self.ticket_number,
            'title': self.title,
            'description': self.description,
            'short_description': self.short_description,
            'priority': self.priority,
            'status': self.status,
            'source': self.source,
            'category_id': self.category_id,
            'category': self.category.name if self.category else None,
            'case_id': self.case_id,
            'client_id': self.client_id,
            'assigned_to': self.assigned_to_id,
            'assigned_user': self.assigned_to.to_dict() if self.assigned_to else None,
            'created_by': self.created_by_id,
            'ai_confidence_score': self.ai_confidence_score,
            'ai_generated_tags': self.ai_generated_tags or [],
            'ai_context': self.ai_context or {},
            'sla_due_date': _iso(self.sla_due_date),
            'sla_breached': self.is_sla_breached(),
            'resolved_at': _iso(self.resolved_at),
            'closed_at': _iso(self.closed_at),
            'first_response_at': _iso(self.first_response_at),
            'tags': self.tags or [],
            'custom_fields': self.custom_fields or {},
            'estimated_hours': self.estimated_hours,
            'actual_hours': self.actual_hours,
            'work_notes': self.work_notes,
            'close_notes': self.close_notes,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }
        if include_comments:
            data['comments'] = [c.to_dict() for c in self.comments]
        return data


class TicketComment(db.Model):
    __tablename__ = 'ticket_comment'

    id = db.Column(db.Integer, primary_key=True)
    ticket_id = db.Column(db.Integer, db.ForeignKey('ticket.id'), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    content = db.Column(db.Text, nullable=False)
    is_internal = db.Column(db.Boolean, default=False)
    comment_type = db.Column(db.String(20), default='comment')  # comment, status_change, work_note, ai_update
    meta = db.Column(db.JSON, default=dict)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    ticket = db.relationship('Ticket', back_populates='comments')
    user = db.relationship('User')

    def to_dict(self):
        return {
            'id': self.id,
            'ticket_id': self.ticket_id,
            'user_id': self.user_id,
            'content': self.content,
            'is_internal': self.is_internal,
            'comment_type': self.comment_type,
            'metadata': self.meta or {},
            'created_at': _iso(self.created_at),
        }


# ==================== AUTOMATION TEMPLATES ====================

class EmailTemplate(db.Model):
    __tablename__ = 'email_template'

    id = db.Column(db.Integer, primary_key=True)
    firm_id = db.Column(db.Integer, db.ForeignKey('firm.id'), nullable=False)
    name = db.Column(db.String(200), nullable=False)
    subject = db.Column(db.String(255), nullable=False)
    body = db.Column(db.Text, nullable=False)
    trigger_type = db.Column(db.String(50), nullable=False)
    variables = db.Column(db.JSON, default=list)
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'firm_id': self.firm_id,
            'name': self.name,
            'subject': self.subject,
            'body': self.body,
            'trigger_type': self.trigger_type,
            'variables': self.variables or [],
            'is_active': self.is_active,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }


class DocumentTemplate(db.Model):
    __tablename__ = 'document_template'

    id = db.Column(db.Integer, primary_key=True)
    firm_id = db.Column(db.Integer, db.ForeignKey('firm.id'), nullable=False)
    key = db.Column(db.String(100), nullable=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    category = db.Column(db.String(50), default='letter')  # contract, letter, court_filing, form, agreement
    template_type = db.Column(db.String(50), default='text')
    content = db.Column(db.Text, nullable=False)
    variables = db.Column(db.JSON, default=list)
    output_format = db.Column(db.String(20), default='text')
    is_active = db.Column(db.Boolean, default=True)
    usage_count = db.Column(db.Integer, default=0)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'firm_id': self.firm_id,
            'key': self.key,
            'name': self.name,
            'description': self.description,
            'category': self.category,
            'template_type': self.template_type,
            'content': self.content,
            'variables': self.variables or [],
            'output_format': self.output_format,
            'is_active': self.is_active,
            'usage_count': self.usage_count or 0,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }


class CalendarAutomation(db.Model):
    __tablename__ = 'calendar_automation'

    id = db.Column(db.Integer, primary_key=True)
    firm_id = db.Column(db.Integer, db.ForeignKey('firm.id'), nullable=False)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    automation_type = db.Column(db.String(50), nullable=False)
    trigger = db.Column(db.String(200), nullable=True)
    schedule_pattern = db.Column(db.String(100), nullable=True)
    recipients = db.Column(db.JSON, default=list)
    is_active = db.Column(db.Boolean, default=True)
    last_run_at = db.Column(db.DateTime, nullable=True)
    next_run_at = db.Column(db.DateTime, nullable=True)
    success_count = db.Column(db.Integer, default=0)
    error_count = db.Column(db.Integer, default=0)
    last_error = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'firm_id': self.firm_id,
            'name': self.name,
            'description': self.description,
            'automation_type': self.automation_type,
            'trigger': self.trigger,
            'schedule_pattern': self.schedule_pattern,
            'recipients': self.recipients or [],
            'is_active': self.is_active,
            'last_run_at': _iso(self.last_run_at),
            'next_run_at': _iso(self.next_run_at),
            'success_count': self.success_count or 0,
            'error_count': self.error_count or 0,
            'last_error': self.last_error,
        }


# ==================== INTEGRATIONS ====================

class Integration(db.Model):
    """Configured third-party connection; credentials never leave the server"""
    __tablename__ = 'integration'

    id = db.Column(db.Integer, primary_key=True)
    firm_id = db.Column(db.Integer, db.ForeignKey('firm.id'), nullable=False)
    name = db.Column(db.String(200), nullable=False)
    type = db.Column(db.String(50), nullable=False)  # billing, court_filing, legal_research, calendar, platform
    provider = db.Column(db.String(50), nullable=False)
    status = db.Column(db.String(20), default='pending')  # connected, disconnected, error, pending
    description = db.Column(db.Text, nullable=True)
    credentials = db.Column(db.JSON, default=dict)
    settings = db.Column(db.JSON, default=dict)
    sync_frequency = db.Column(db.String(20), default='manual')
    features = db.Column(db.JSON, default=list)
    webhook_url = db.Column(db.String(500), nullable=True)
    last_sync_at = db.Column(db.DateTime, nullable=True)
    error_status = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'firm_id': self.firm_id,
            'name': self.name,
            'type': self.type,
            'provider': self.provider,
            'status': self.status,
            'description': self.description,
            'settings': self.settings or {},
            'sync_frequency': self.sync_frequency,
            'features': self.features or [],
            'webhook_url': self.webhook_url,
            'has_credentials': bool(self.credentials),
            'last_sync_at': _iso(self.last_sync_at),
            'error_status': self.error_status,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }


class Invoice(db.Model):
    """Client invoice, mirrored from the connected billing system when present"""
    __tablename__ = 'invoice'
    __table_args__ = (db.UniqueConstraint('firm_id', 'invoice_number', name='uq_invoice_firm_number'),)

    id = db.Column(db.Integer, primary_key=True)
    firm_id = db.Column(db.Integer, db.ForeignKey('firm.id'), nullable=False)
    client_id = db.Column(db.Integer, db.ForeignKey('client.id'), nullable=True)
    case_id = db.Column(db.Integer, db.ForeignKey('case.id'), nullable=True)
    invoice_number = db.Column(db.String(50), nullable=False)
    external_id = db.Column(db.String(100), nullable=True)
    provider = db.Column(db.String(50), nullable=True)
    amount = db.Column(db.Float, default=0.0)
    tax_amount = db.Column(db.Float, default=0.0)
    total_amount = db.Column(db.Float, default=0.0)
    amount_paid = db.Column(db.Float, default=0.0)
    currency = db.Column(db.String(3), default='USD')
    status = db.Column(db.String(20), default='draft')  # draft, sent, paid, overdue, cancelled
    issue_date = db.Column(db.Date, nullable=True)
    due_date = db.Column(db.Date, nullable=True)
    paid_at = db.Column(db.DateTime, nullable=True)
    line_items = db.Column(db.JSON, default=list)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    client = db.relationship('Client', backref=db.backref('invoices', lazy=True))
    case = db.relationship('Case', backref=db.backref('invoices', lazy=True))

    @property
    def balance_due(self):
        return round((self.total_amount or 0.0) - (self.amount_paid or 0.0), 2)

    def add_payment(self, amount):
        """Record a payment and update status"""
        self.amount_paid = (self.amount_paid or 0.0) + amount
        if self.balance_due <= 0:
            self.status = 'paid'
            self.paid_at = datetime.utcnow()

    def is_overdue(self):
        if self.status in ['paid', 'cancelled', 'draft'] or not self.due_date:
            return False
        return self.due_date < datetime.utcnow().date()

    def to_dict(self):
        return {
            'id': self.id,
            'firm_id': self.firm_id,
            'client_id': self.client_id,
            'case_id': self.case_id,
            'invoice_number': self.invoice_number,
            'external_id': self.external_id,
            'provider': self.provider,
            'amount': self.amount,
            'tax_amount': self.tax_amount,
            'total_amount': self.total_amount,
            'amount_paid': self.amount_paid,
            'balance_due': self.balance_due,
            'currency': self.currency,
            'status': self.status,
            'issue_date': _iso(self.issue_date),
            'due_date': _iso(self.due_date),
            'paid_at': _iso(self.paid_at),
            'line_items': self.line_items or [],
            'is_overdue': self.is_overdue(),
        }


class CourtFiling(db.Model):
    __tablename__ = 'court_filing'

    id = db.Column(db.Integer, primary_key=True)
    firm_id = db.Column(db.Integer, db.ForeignKey('firm.id'), nullable=False)
    case_id = db.Column(db.Integer, db.ForeignKey('case.id'), nullable=True)
    provider = db.Column(db.String(50), nullable=False)
    court_id = db.Column(db.String(100), nullable=True)
    case_number = db.Column(db.String(100), nullable=True)
    filing_type = db.Column(db.String(100), nullable=False)
    documents = db.Column(db.JSON, default=list)
    parties = db.Column(db.JSON, default=list)
    attorney = db.Column(db.JSON, default=dict)
    status = db.Column(db.String(20), default='draft')  # draft, submitted, accepted, rejected, processed
    confirmation_number = db.Column(db.String(100), nullable=True)
    docket_number = db.Column(db.String(100), nullable=True)
    fee_amount = db.Column(db.Float, default=0.0)
    fee_currency = db.Column(db.String(3), default='USD')
    fee_waived = db.Column(db.Boolean, default=False)
    submitted_at = db.Column(db.DateTime, nullable=True)
    processed_at = db.Column(db.DateTime, nullable=True)
    error_message = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    case = db.relationship('Case', backref=db.backref('court_filings', lazy=True))

    def to_dict(self):
        return {
            'id': self.id,
            'firm_id': self.firm_id,
            'case_id': self.case_id,
            'provider': self.provider,
            'court_id': self.court_id,
            'case_number': self.case_number,
            'filing_type': self.filing_type,
            'documents': self.documents or [],
            'parties': self.parties or [],
            'attorney': self.attorney or {},
            'status': self.status,
            'confirmation_number': self.confirmation_number,
            'docket_number': self.docket_number,
            'fees': {
                'amount': self.fee_amount or 0.0,
                'currency': self.fee_currency,
                'waived': bool(self.fee_waived),
            },
            'submitted_at': _iso(self.submitted_at),
            'processed_at': _iso(self.processed_at),
            'error_message': self.error_message,
        }


class CalendarEvent(db.Model):
    """Calendar events linked to cases/clients with optional reminders"""
    __tablename__ = 'calendar_event'

    id = db.Column(db.Integer, primary_key=True)
    firm_id = db.Column(db.Integer, db.ForeignKey('firm.id'), nullable=False)
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text)
    start_at = db.Column(db.DateTime, nullable=False)
    end_at = db.Column(db.DateTime, nullable=True)
    all_day = db.Column(db.Boolean, default=False)
    location = db.Column(db.String(255))
    event_type = db.Column(db.String(30), default='other')  # court_date, hearing, meeting, deadline, reminder, other
    attendees = db.Column(db.JSON, default=list)
    status = db.Column(db.String(20), default='scheduled')  # scheduled, confirmed, tentative, cancelled
    provider = db.Column(db.String(50), nullable=True)
    external_id = db.Column(db.String(200), nullable=True)

    case_id = db.Column(db.Integer, db.ForeignKey('case.id'))
    client_id = db.Column(db.Integer, db.ForeignKey('client.id'))
    created_by_id = db.Column(db.Integer, db.ForeignKey('user.id'))

    reminder_minutes_before = db.Column(db.Integer, default=0)
    last_notified_at = db.Column(db.DateTime, nullable=True)  # calendar automation digests
    reminder_sent_at = db.Column(db.DateTime, nullable=True)  # per-event reminder email

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    case = db.relationship('Case', backref=db.backref('calendar_events', lazy=True))
    client = db.relationship('Client', backref=db.backref('calendar_events', lazy=True))
    created_by = db.relationship('User')

    def to_dict(self):
        return {
            'id': self.id,
            'firm_id': self.firm_id,
            'title': self.title,
            'description': self.description,
            'start_at': _iso(self.start_at),
            'end_at': _iso(self.end_at),
            'all_day': self.all_day,
            'location': self.location,
            'event_type': self.event_type,
            'attendees': self.attendees or [],
            'status': self.status,
            'provider': self.provider,
            'external_id': self.external_id,
            'case_id': self.case_id,
            'client_id': self.client_id,
            'reminder_minutes_before': self.reminder_minutes_before,
        }


# ==================== AGENT / AI ====================

class AgentConversation(db.Model):
    __tablename__ = 'agent_conversation'

    id = db.Column(db.Integer, primary_key=True)
    firm_id = db.Column(db.Integer, db.ForeignKey('firm.id'), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    topic = db.Column(db.String(50), default='general_inquiry')
    stage = db.Column(db.String(30), default='initial')  # initial, gathering_info, ready_to_respond, completed
    required_info = db.Column(db.JSON, default=list)
    gathered_info = db.Column(db.JSON, default=dict)
    follow_up_rounds = db.Column(db.Integer, default=0)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    messages = db.relationship('AgentMessage', back_populates='conversation', cascade='all, delete-orphan',
                               order_by='AgentMessage.id')

    def to_dict(self, include_messages=False):
        data = {
            'id': self.id,
            'firm_id': self.firm_id,
            'user_id': self.user_id,
            'topic': self.topic,
            'stage': self.stage,
            'required_info': self.required_info or [],
            'gathered_info': self.gathered_info or {},
            'follow_up_rounds': self.follow_up_rounds or 0,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }
        if include_messages:
            data['messages'] = [m.to_dict() for m in self.messages]
        return data


class AgentMessage(db.Model):
    __tablename__ = 'agent_message'

    id = db.Column(db.Integer, primary_key=True)
    conversation_id = db.Column(db.Integer, db.ForeignKey('agent_conversation.id'), nullable=False)
    role = db.Column(db.String(10), nullable=False)  # user, agent, system
    content = db.Column(db.Text, nullable=False)
    context = db.Column(db.JSON, default=dict)
    actions_taken = db.Column(db.JSON, default=list)
    follow_up_questions = db.Column(db.JSON, default=list)
    needs_more_info = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    conversation = db.relationship('AgentConversation', back_populates='messages')

    def to_dict(self):
        return {
            'id': self.id,
            'role': self.role,
            'content': self.content,
            'context': self.context or {},
            'actions_taken': self.actions_taken or [],
            'follow_up_questions': self.follow_up_questions or [],
            'needs_more_info': self.needs_more_info,
            'timestamp': _iso(self.created_at),
        }


class AIAnalysis(db.Model):
    """Stored result of a document analysis run"""
    __tablename__ = 'ai_analysis'

    id = db.Column(db.Integer, primary_key=True)
    firm_id = db.Column(db.Integer, db.ForeignKey('firm.id'), nullable=False)
    document_id = db.Column(db.String(100), nullable=True)
    document_name = db.Column(db.String(255), nullable=True)
    analysis_type = db.Column(db.String(50), default='document_classification')
    category = db.Column(db.String(50), nullable=True)
    confidence_score = db.Column(db.Float, default=0.0)
    findings = db.Column(db.JSON, default=list)
    entities = db.Column(db.JSON, default=dict)
    risk_level = db.Column(db.String(20), default='low')
    summary = db.Column(db.Text, nullable=True)
    provider = db.Column(db.String(30), default='rules')
    processing_time_ms = db.Column(db.Integer, default=0)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'document_id': self.document_id,
            'document_name': self.document_name,
            'analysis_type': self.analysis_type,
            'category': self.category,
            'confidence_score': self.confidence_score,
            'findings': self.findings or [],
            'entities': self.entities or {},
            'risk_level': self.risk_level,
            'summary': self.summary,
            'provider': self.provider,
            'processing_time_ms': self.processing_time_ms,
            'created_at': _iso(self.created_at),
        }


# ==================== WORKFLOWS / QUEUE / AUDIT ====================

class WorkflowRule(db.Model):
    __tablename__ = 'workflow_rule'

    id = db.Column(db.Integer, primary_key=True)
    firm_id = db.Column(db.Integer, db.ForeignKey('firm.id'), nullable=False)
    key = db.Column(db.String(100), nullable=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    trigger_type = db.Column(db.String(50), nullable=False)
    trigger_event = db.Column(db.String(100), nullable=True)
    conditions = db.Column(db.JSON, default=list)
    actions = db.Column(db.JSON, default=list)
    enabled = db.Column(db.Boolean, default=True)
    priority = db.Column(db.Integer, default=0)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'firm_id': self.firm_id,
            'key': self.key,
            'name': self.name,
            'description': self.description,
            'trigger': {'type': self.trigger_type, 'event': self.trigger_event},
            'conditions': self.conditions or [],
            'actions': self.actions or [],
            'enabled': self.enabled,
            'priority': self.priority,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }


class WorkflowExecution(db.Model):
    __tablename__ = 'workflow_execution'

    id = db.Column(db.Integer, primary_key=True)
    firm_id = db.Column(db.Integer, db.ForeignKey('firm.id'), nullable=False)
    rule_id = db.Column(db.Integer, db.ForeignKey('workflow_rule.id'), nullable=True)
    status = db.Column(db.String(20), default='pending')  # pending, running, completed, failed
    trigger_data = db.Column(db.JSON, default=dict)
    execution_log = db.Column(db.JSON, default=list)
    error_message = db.Column(db.Text, nullable=True)
    started_at = db.Column(db.DateTime, default=datetime.utcnow)
    completed_at = db.Column(db.DateTime, nullable=True)

    rule = db.relationship('WorkflowRule', backref=db.backref('executions', lazy=True))

    def to_dict(self):
        return {
            'id': self.id,
            'rule_id': self.rule_id,
            'status': self.status,
            'trigger_data': self.trigger_data or {},
            'execution_log': self.execution_log or [],
            'error_message': self.error_message,
            'started_at': _iso(self.started_at),
            'completed_at': _iso(self.completed_at),
        }


class EmailQueue(db.Model):
    """Queue for scheduled outbound emails (reminders, workflow mail)."""
    __tablename__ = 'email_queue'

    id = db.Column(db.Integer, primary_key=True)
    firm_id = db.Column(db.Integer, db.ForeignKey('firm.id'), nullable=True)
    case_id = db.Column(db.Integer, db.ForeignKey('case.id'), nullable=True)
    to = db.Column(db.String(255), nullable=True)
    subject = db.Column(db.String(255), nullable=False)
    body = db.Column(db.Text, nullable=False)
    send_after = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    status = db.Column(db.String(20), default='pending')  # pending|sent|failed
    attempts = db.Column(db.Integer, default=0)
    last_error = db.Column(db.Text, nullable=True)
    source = db.Column(db.String(50), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'firm_id': self.firm_id,
            'case_id': self.case_id,
            'to': self.to,
            'subject': self.subject,
            'send_after': _iso(self.send_after),
            'status': self.status,
            'attempts': self.attempts,
            'last_error': self.last_error,
            'source': self.source,
            'created_at': _iso(self.created_at),
        }


class AuditLog(db.Model):
    __tablename__ = 'audit_log'

    id = db.Column(db.Integer, primary_key=True)
    firm_id = db.Column(db.Integer, db.ForeignKey('firm.id'), nullable=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    event_type = db.Column(db.String(50), nullable=False)
    event_name = db.Column(db.String(200), nullable=True)
    entity_type = db.Column(db.String(50), nullable=True)
    entity_id = db.Column(db.Integer, nullable=True)
    risk_level = db.Column(db.String(20), default='low')  # low, medium, high, critical
    result = db.Column(db.String(20), default='success')  # success, failure
    compliance_relevant = db.Column(db.Boolean, default=False)
    details = db.Column(db.JSON, default=dict)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'firm_id': self.firm_id,
            'user_id': self.user_id,
            'event_type': self.event_type,
            'event_name': self.event_name,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'risk_level': self.risk_level,
            'result': self.result,
            'compliance_relevant': self.compliance_relevant,
            'details': self.details or {},
            'created_at': _iso(self.created_at),
        }


def record_audit(firm_id, event_type, event_name=None, user_id=None, entity_type=None, entity_id=None,
                 risk_level='low', result='success', compliance_relevant=False, details=None):
    """Add an audit row to the session; the caller commits."""
    entry = AuditLog(
        firm_id=firm_id,
        user_id=user_id,
        event_type=event_type,
        event_name=event_name,
        entity_type=entity_type,
        entity_id=entity_id,
        risk_level=risk_level,
        result=result,
        compliance_relevant=compliance_relevant,
        details=details or {},
    )
    db.session.add(entry)
    return entry
