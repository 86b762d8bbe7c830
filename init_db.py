import os

from app import app, db
from services.onboarding import onboard_firm


def init_db():
    with app.app_context():
        # Create all database tables
        print("Creating database tables...")
        db.create_all()

        # Onboard the default firm and its admin if they don't exist
        result = onboard_firm({
            'firm_name': os.getenv('LAW_FIRM_NAME', 'ThemisCore Demo Firm'),
            'slug': os.getenv('LAW_FIRM_SLUG', 'themiscore-demo'),
            'admin_email': os.getenv('ADMIN_EMAIL', 'admin@lawfirm.com'),
            'admin_first_name': 'Admin',
            'admin_last_name': 'User',
            'admin_password': os.getenv('ADMIN_PASSWORD', 'admin123'),
        })
        if result['created']:
            print(f"Default firm '{result['firm'].name}' created with admin '{result['admin'].email}'")
        else:
            print("Default firm already exists, defaults refreshed")


if __name__ == '__main__':
    init_db()
    print("Database initialization complete!")
