import os
import tempfile

import pytest

# Must be set before the app module is imported
_DB_DIR = tempfile.mkdtemp(prefix='themiscore-test-')
os.environ['DATABASE_URL'] = f"sqlite:///{os.path.join(_DB_DIR, 'test.db')}"
os.environ['ENABLE_SCHEDULER'] = 'false'
os.environ['OPENAI_API_KEY'] = ''
os.environ['GEMINI_API_KEY'] = ''
os.environ['SMTP_HOST'] = ''
os.environ['UPLOAD_FOLDER'] = os.path.join(_DB_DIR, 'uploads')

from app import app as flask_app  # noqa: E402
from models import db  # noqa: E402
from services.ai_engine import ai_engine  # noqa: E402
from services.onboarding import onboard_firm  # noqa: E402

AUTH = ('demo', 'themiscore123')


@pytest.fixture
def app():
    flask_app.config['TESTING'] = True
    with flask_app.app_context():
        db.create_all()
        ai_engine.config.update({'openai_api_key': '', 'gemini_api_key': '', 'preferred_provider': 'auto'})
        yield flask_app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def firm(app):
    result = onboard_firm({
        'firm_name': 'Hale & Partners',
        'slug': 'hale-partners',
        'admin_email': 'admin@hale.test',
        'admin_first_name': 'Ada',
        'admin_last_name': 'Hale',
        'admin_password': 'secret123',
    })
    return result['firm']


@pytest.fixture
def admin(firm):
    from models import User
    return User.query.filter_by(firm_id=firm.id, role='admin').first()


@pytest.fixture
def auth_headers(firm, admin):
    import base64
    token = base64.b64encode(f"{AUTH[0]}:{AUTH[1]}".encode()).decode()
    return {
        'Authorization': f"Basic {token}",
        'X-Firm-Id': str(firm.id),
        'X-User-Id': str(admin.id),
    }
