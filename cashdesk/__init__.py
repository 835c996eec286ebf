import logging

from flask import Flask
from cashdesk.extensions import db
from cashdesk.services.ledger_service import MembershipLedger
from config import Config


def create_app(config_class=Config, ledger=None):
    app = Flask(__name__)
    app.config.from_object(config_class)

    logging.getLogger('cashdesk').setLevel(app.config.get('LOG_LEVEL', 'INFO'))

    # Initialize extensions
    db.init_app(app)

    ledger = ledger or MembershipLedger()
    ledger.init_app(app)

    return app
