"""
Billing system connector (QuickBooks, Xero, FreshBooks, Bill4Time) and
webhook handling that mirrors provider events onto local invoices and
clients.
"""
import os
import base64
import logging
from datetime import datetime, date, timedelta
from typing import Any, Dict, List, Optional

import requests

from models import db, Invoice, Client, record_audit
from services.integrations import BaseIntegrationService, IntegrationError
from services.workflow_engine import workflow_engine
from utils import parse_datetime

logger = logging.getLogger(__name__)

HTTP_TIMEOUT = int(os.getenv('HTTP_TIMEOUT', 30))

BASE_URLS = {
    'quickbooks': 'https://quickbooks.api.intuit.com/v3/company',
    'xero': 'https://api.xero.com/api.xro/2.0',
    'freshbooks': 'https://api.freshbooks.com/accounting',
    'bill4time': 'https://www.bill4time.com/api/web',
}
QUICKBOOKS_SANDBOX_URL = 'https://sandbox-quickbooks.api.intuit.com/v3/company'

WEBHOOK_EVENTS = ('invoice.created', 'invoice.paid', 'payment.received', 'client.updated')


class BillingError(IntegrationError):
    pass


def normalize_status(raw_status=None, balance=None) -> str:
    if balance is not None and str(balance) != '':
        try:
            if float(balance) == 0:
                return 'paid'
        except (TypeError, ValueError):
            pass
    s = str(raw_status or '').lower()
    if 'unpaid' in s:
        return 'sent'
    for key in ('paid', 'overdue', 'draft'):
        if key in s:
            return key
    return 'sent'


def _date(value) -> Optional[str]:
    if not value:
        return None
    if isinstance(value, (datetime, date)):
        return value.strftime('%Y-%m-%d')
    return str(value)[:10]


class BillingService(BaseIntegrationService):
    PROVIDERS = ('quickbooks', 'xero', 'freshbooks', 'bill4time')

    @property
    def base_url(self) -> str:
        if self.provider == 'quickbooks' and self.sandbox:
            return QUICKBOOKS_SANDBOX_URL
        return BASE_URLS[self.provider]

    @property
    def company_id(self) -> str:
        return self.settings.get('company_id') or self.credentials.get('company_id') or ''

    def auth_headers(self) -> Dict[str, str]:
        headers = {'Accept': 'application/json', 'Content-Type': 'application/json'}
        if self.provider == 'bill4time':
            raw = f"{self.credentials.get('api_key', '')}:{self.credentials.get('secret_key', '')}"
            headers['Authorization'] = 'Basic ' + base64.b64encode(raw.encode('utf-8')).decode('ascii')
        else:
            headers['Authorization'] = f"Bearer {self.credentials.get('access_token', '')}"
        if self.provider == 'xero':
            headers['Xero-tenant-id'] = self.settings.get('tenant_id') or self.credentials.get('tenant_id', '')
        return headers

    def endpoint(self, kind: str) -> str:
        company = self.company_id
        paths = {
            'invoice': {'quickbooks': f"/{company}/invoice", 'xero': '/Invoices',
                        'freshbooks': f"/account/{company}/invoices/invoices" if company else '/invoices',
                        'bill4time': '/invoice'},
            'payment': {'quickbooks': f"/{company}/payment", 'xero': '/Payments',
                        'freshbooks': f"/account/{company}/payments/payments" if company else '/payments',
                        'bill4time': '/payment'},
            'clients': {'quickbooks': f"/{company}/query", 'xero': '/Contacts',
                        'freshbooks': f"/account/{company}/users/clients" if company else '/clients',
                        'bill4time': '/clients'},
            'test': {'quickbooks': f"/{company}/companyinfo/{company}", 'xero': '/Organisations',
                     'freshbooks': '/users/me', 'bill4time': '/company'},
        }
        return self.base_url + paths[kind][self.provider]

    def _request(self, method: str, url: str, payload: Optional[Dict[str, Any]] = None,
                 params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            res = requests.request(method, url, headers=self.auth_headers(), json=payload, params=params,
                                   timeout=HTTP_TIMEOUT)
        except requests.RequestException as e:
            raise BillingError(f"{self.provider} request failed: {e}")
        if res.status_code >= 400:
            raise BillingError(f"{self.provider} error: {res.status_code} {res.text[:200]}")
        try:
            return res.json()
        except ValueError:
            return {}

    # ---- payload formatting ----

    def format_invoice(self, invoice: Invoice) -> Dict[str, Any]:
        customer = invoice.client.external_id if invoice.client and invoice.client.external_id else \
            str(invoice.client_id or '')
        lines = invoice.line_items or [{'description': f"Invoice {invoice.invoice_number}",
                                        'quantity': 1, 'rate': invoice.total_amount or 0.0}]
        issue = _date(invoice.issue_date or datetime.utcnow())
        due = _date(invoice.due_date or (datetime.utcnow() + timedelta(days=30)))

        def amount(line):
            return round(float(line.get('quantity', 1)) * float(line.get('rate', 0)), 2)

        if self.provider == 'quickbooks':
            return {
                'Line': [{
                    'Amount': amount(l),
                    'Description': l.get('description'),
                    'DetailType': 'SalesItemLineDetail',
                    'SalesItemLineDetail': {'ItemRef': {'value': '1'}, 'Qty': l.get('quantity', 1),
                                            'UnitPrice': l.get('rate', 0)},
                } for l in lines],
                'CustomerRef': {'value': customer},
                'DueDate': due,
                'TotalAmt': invoice.total_amount,
            }
        if self.provider == 'xero':
            return {
                'Type': 'ACCREC',
                'Contact': {'ContactID': customer},
                'Date': issue,
                'DueDate': due,
                'InvoiceNumber': invoice.invoice_number,
                'LineItems': [{'Description': l.get('description'), 'Quantity': l.get('quantity', 1),
                               'UnitAmount': l.get('rate', 0)} for l in lines],
            }
        if self.provider == 'freshbooks':
            return {'invoice': {
                'customerid': customer,
                'create_date': issue,
                'due_date': due,
                'invoice_number': invoice.invoice_number,
                'lines': [{'name': l.get('description'), 'qty': str(l.get('quantity', 1)),
                           'unit_cost': {'amount': str(l.get('rate', 0)), 'code': invoice.currency},
                           'amount': {'amount': str(amount(l)), 'code': invoice.currency}} for l in lines],
            }}
        return {
            'ClientId': customer,
            'InvoiceDate': issue,
            'DueDate': due,
            'InvoiceNumber': invoice.invoice_number,
            'LineItems': [{'Description': l.get('description'), 'Hours': l.get('quantity', 1),
                           'Rate': l.get('rate', 0)} for l in lines],
        }

    def format_payment(self, invoice: Invoice, amount: float, paid_on: date, method: str) -> Dict[str, Any]:
        if self.provider == 'quickbooks':
            customer = invoice.client.external_id if invoice.client else None
            return {
                'TotalAmt': amount,
                'CustomerRef': {'value': customer or ''},
                'Line': [{'Amount': amount, 'LinkedTxn': [{'TxnId': invoice.external_id, 'TxnType': 'Invoice'}]}],
            }
        if self.provider == 'xero':
            return {'Invoice': {'InvoiceID': invoice.external_id}, 'Account': {'Code': '200'},
                    'Date': _date(paid_on), 'Amount': amount}
        if self.provider == 'freshbooks':
            return {'payment': {'invoiceid': invoice.external_id, 'amount': {'amount': str(amount)},
                                'date': _date(paid_on), 'type': method}}
        return {'InvoiceId': invoice.external_id, 'Amount': amount, 'PaymentDate': _date(paid_on),
                'PaymentMethod': method}

    # ---- response parsing ----

    def parse_invoice(self, data: Dict[str, Any]) -> Dict[str, Any]:
        if self.provider == 'quickbooks':
            inv = data.get('Invoice') or {}
            return {'external_id': inv.get('Id'), 'invoice_number': inv.get('DocNumber'),
                    'total': inv.get('TotalAmt'), 'balance': inv.get('Balance'),
                    'status': normalize_status(None, inv.get('Balance')), 'due_date': inv.get('DueDate')}
        if self.provider == 'xero':
            inv = (data.get('Invoices') or [{}])[0]
            return {'external_id': inv.get('InvoiceID'), 'invoice_number': inv.get('InvoiceNumber'),
                    'total': inv.get('Total'), 'balance': inv.get('AmountDue'),
                    'status': normalize_status(inv.get('Status')), 'due_date': inv.get('DueDate')}
        if self.provider == 'freshbooks':
            inv = ((data.get('response') or {}).get('result') or {}).get('invoice') or data.get('invoice') or {}
            outstanding = (inv.get('outstanding') or {}).get('amount')
            return {'external_id': inv.get('id') or inv.get('invoiceid'), 'invoice_number': inv.get('invoice_number'),
                    'total': (inv.get('amount') or {}).get('amount'), 'balance': outstanding,
                    'status': normalize_status(inv.get('v3_status') or inv.get('status'), outstanding),
                    'due_date': inv.get('due_date')}
        inv = data.get('Invoice') or data
        return {'external_id': inv.get('InvoiceId'), 'invoice_number': inv.get('InvoiceNumber'),
                'total': inv.get('Total'), 'balance': inv.get('Balance'),
                'status': normalize_status(inv.get('Status'), inv.get('Balance')), 'due_date': inv.get('DueDate')}

    def parse_payment(self, data: Dict[str, Any]) -> Dict[str, Any]:
        if self.provider == 'quickbooks':
            p = data.get('Payment') or {}
            return {'external_id': p.get('Id'), 'amount': p.get('TotalAmt')}
        if self.provider == 'xero':
            p = (data.get('Payments') or [{}])[0]
            return {'external_id': p.get('PaymentID'), 'amount': p.get('Amount')}
        if self.provider == 'freshbooks':
            p = ((data.get('response') or {}).get('result') or {}).get('payment') or data.get('payment') or {}
            return {'external_id': p.get('id') or p.get('paymentid'), 'amount': (p.get('amount') or {}).get('amount')}
        p = data.get('Payment') or data
        return {'external_id': p.get('PaymentId'), 'amount': p.get('Amount')}

    def parse_clients(self, data: Dict[str, Any]) -> List[Dict[str, Any]]:
        clients = []
        if self.provider == 'quickbooks':
            for c in (data.get('QueryResponse') or {}).get('Customer') or []:
                clients.append({
                    'external_id': c.get('Id'),
                    'first_name': c.get('GivenName') or (c.get('DisplayName') or '').split(' ')[0],
                    'last_name': c.get('FamilyName') or ' '.join((c.get('DisplayName') or '').split(' ')[1:]),
                    'email': (c.get('PrimaryEmailAddr') or {}).get('Address'),
                    'phone': (c.get('PrimaryPhone') or {}).get('FreeFormNumber'),
                    'company': c.get('CompanyName'),
                })
        elif self.provider == 'xero':
            for c in data.get('Contacts') or []:
                phones = [p.get('PhoneNumber') for p in c.get('Phones') or [] if p.get('PhoneNumber')]
                clients.append({
                    'external_id': c.get('ContactID'),
                    'first_name': c.get('FirstName') or (c.get('Name') or '').split(' ')[0],
                    'last_name': c.get('LastName') or ' '.join((c.get('Name') or '').split(' ')[1:]),
                    'email': c.get('EmailAddress'),
                    'phone': phones[0] if phones else None,
                    'company': c.get('Name') if not c.get('FirstName') else None,
                })
        elif self.provider == 'freshbooks':
            rows = ((data.get('response') or {}).get('result') or {}).get('clients') or data.get('clients') or []
            for c in rows:
                clients.append({
                    'external_id': str(c.get('id')),
                    'first_name': c.get('fname') or '',
                    'last_name': c.get('lname') or '',
                    'email': c.get('email'),
                    'phone': c.get('home_phone') or c.get('mob_phone'),
                    'company': c.get('organization'),
                })
        else:
            for c in data.get('clients') or data.get('Clients') or []:
                clients.append({
                    'external_id': str(c.get('ClientId')),
                    'first_name': c.get('FirstName') or '',
                    'last_name': c.get('LastName') or '',
                    'email': c.get('Email'),
                    'phone': c.get('Phone'),
                    'company': c.get('CompanyName'),
                })
        return clients

    # ---- operations ----

    def create_invoice(self, invoice: Invoice) -> Dict[str, Any]:
        data = self._request('POST', self.endpoint('invoice'), self.format_invoice(invoice))
        parsed = self.parse_invoice(data)
        invoice.external_id = parsed.get('external_id') and str(parsed['external_id'])
        invoice.provider = self.provider
        if invoice.status == 'draft':
            invoice.status = 'sent'
        db.session.commit()
        logger.info(f"Invoice {invoice.invoice_number} pushed to {self.provider} as {invoice.external_id}")
        return parsed

    def get_invoice(self, external_id: str) -> Dict[str, Any]:
        url = f"{self.endpoint('invoice')}/{external_id}"
        return self.parse_invoice(self._request('GET', url))

    def record_payment(self, invoice: Invoice, amount: float, paid_on: Optional[date] = None,
                       method: str = 'bank_transfer') -> Dict[str, Any]:
        if amount is None or float(amount) <= 0:
            raise BillingError('Payment amount must be positive')
        if not invoice.external_id:
            raise BillingError('Invoice has not been sent to the billing provider')
        amount = float(amount)
        data = self._request('POST', self.endpoint('payment'),
                             self.format_payment(invoice, amount, paid_on or date.today(), method))
        invoice.add_payment(amount)
        db.session.commit()
        return self.parse_payment(data)

    def sync_clients(self) -> Dict[str, int]:
        params = {'query': 'select * from Customer'} if self.provider == 'quickbooks' else None
        remote = self.parse_clients(self._request('GET', self.endpoint('clients'), params=params))
        created = updated = 0
        for item in remote:
            if not item.get('external_id'):
                continue
            client = Client.query.filter_by(firm_id=self.firm_id, external_id=item['external_id']).first()
            if client is None and item.get('email'):
                client = Client.query.filter_by(firm_id=self.firm_id, email=item['email']).first()
            if client is None:
                client = Client(firm_id=self.firm_id, first_name=item['first_name'] or 'Unknown',
                                last_name=item['last_name'] or '-')
                db.session.add(client)
                created += 1
            else:
                updated += 1
            client.external_id = item['external_id']
            for field in ('email', 'phone', 'company'):
                if item.get(field):
                    setattr(client, field, item[field])
        db.session.commit()
        return {'created': created, 'updated': updated, 'total': len(remote)}

    def test_connection(self) -> bool:
        try:
            self._request('GET', self.endpoint('test'))
            return True
        except BillingError as e:
            logger.error(f"Billing connection test failed: {e}")
            return False


# ---- webhooks ----

def parse_webhook_event(provider: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    event_type = payload.get('type') or payload.get('event_type')
    if not event_type:
        raise BillingError('Webhook event type is required')
    return {
        'id': payload.get('id'),
        'type': event_type,
        'data': payload.get('data') or {},
        'timestamp': payload.get('timestamp') or datetime.utcnow().isoformat(),
        'provider': provider,
    }


def _invoice_by_external(firm_id: int, provider: str, external_id) -> Optional[Invoice]:
    if not external_id:
        return None
    return Invoice.query.filter_by(firm_id=firm_id, provider=provider, external_id=str(external_id)).first()


def process_billing_webhook(firm_id: int, provider: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    if provider not in BillingService.PROVIDERS:
        raise BillingError(f"Unsupported billing provider: {provider}")
    event = parse_webhook_event(provider, payload)
    data = event['data']
    result = {'event_id': event['id'], 'type': event['type'], 'handled': True}
    paid_invoice = None

    if event['type'] == 'invoice.created':
        external_id = data.get('id') or data.get('external_id')
        if not external_id:
            raise BillingError('invoice.created requires an invoice id')
        invoice = _invoice_by_external(firm_id, provider, external_id)
        if invoice is None:
            client = None
            if data.get('client_id'):
                client = Client.query.filter_by(firm_id=firm_id, external_id=str(data['client_id'])).first()
            invoice = Invoice(firm_id=firm_id, provider=provider, external_id=str(external_id),
                              invoice_number=data.get('invoice_number') or f"EXT-{external_id}",
                              client_id=client.id if client else None)
            db.session.add(invoice)
        total = float(data.get('total') or data.get('amount') or 0.0)
        invoice.amount = total
        invoice.total_amount = total
        invoice.currency = data.get('currency') or invoice.currency or 'USD'
        due = parse_datetime(data.get('due_date'))
        invoice.due_date = due.date() if due else invoice.due_date
        invoice.issue_date = invoice.issue_date or date.today()
        invoice.status = normalize_status(data.get('status'), data.get('balance'))
        db.session.flush()
        result['invoice_id'] = invoice.id
    elif event['type'] == 'invoice.paid':
        invoice = _invoice_by_external(firm_id, provider, data.get('id') or data.get('invoice_id'))
        if invoice is None:
            raise BillingError('Unknown invoice')
        if invoice.status != 'paid':
            paid_invoice = invoice
        invoice.amount_paid = invoice.total_amount
        invoice.status = 'paid'
        invoice.paid_at = parse_datetime(data.get('paid_at')) or datetime.utcnow()
        result['invoice_id'] = invoice.id
    elif event['type'] == 'payment.received':
        invoice = _invoice_by_external(firm_id, provider, data.get('invoice_id'))
        if invoice is None:
            raise BillingError('Unknown invoice')
        amount = float(data.get('amount') or 0.0)
        if amount <= 0:
            raise BillingError('Payment amount must be positive')
        was_paid = invoice.status == 'paid'
        invoice.add_payment(amount)
        if invoice.status == 'paid' and not was_paid:
            paid_invoice = invoice
        result['invoice_id'] = invoice.id
    elif event['type'] == 'client.updated':
        client = Client.query.filter_by(firm_id=firm_id, external_id=str(data.get('id'))).first()
        if client is None:
            raise BillingError('Unknown client')
        for field in ('first_name', 'last_name', 'email', 'phone', 'company', 'address'):
            if data.get(field):
                setattr(client, field, data[field])
        result['client_id'] = client.id
    else:
        logger.info(f"Ignoring unhandled billing webhook {event['type']} from {provider}")
        result['handled'] = False

    record_audit(firm_id, 'billing_webhook', f"{provider} {event['type']}", entity_type='invoice',
                 entity_id=result.get('invoice_id'), details={'event_id': event['id'], 'handled': result['handled']})
    db.session.commit()
    if paid_invoice is not None:
        client = paid_invoice.client
        executions = workflow_engine.trigger_workflows(firm_id, 'payment_received', {
            'invoice': paid_invoice.to_dict(),
            'client': {'id': client.id, 'name': client.full_name, 'email': client.email,
                       'address': client.address} if client else {},
        })
        result['workflows_run'] = len(executions)
    return result
