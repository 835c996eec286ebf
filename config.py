import os


class Config:
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'change-me-cash-desk-secret'
    # Relative SQLite paths land in the Flask instance folder
    SQLALCHEMY_DATABASE_URI = os.environ.get('CASHDESK_DATABASE_URL') or 'sqlite:///cashdesk.db'
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Create tables and open the ledger inside create_app()
    LEDGER_AUTO_INITIALIZE = True
    LOG_LEVEL = os.environ.get('CASHDESK_LOG_LEVEL', 'INFO')


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    LEDGER_AUTO_INITIALIZE = False
    LOG_LEVEL = 'DEBUG'
