from setuptools import setup

setup(
    name="themiscore",
    version="0.2",
    py_modules=['app', 'models', 'utils', 'filters', 'document_service', 'init_db'],
    packages=['services'],
    install_requires=[
        'flask',
        'python-dotenv',
        'flask-sqlalchemy',
        'flask-migrate',
        'psycopg2-binary',
        'python-dateutil',
        'werkzeug',
        'requests',
        'apscheduler',
    ],
    extras_require={
        'test': ['pytest'],
    },
    python_requires='>=3.8',
)
