"""Firebase Admin initialization, custom tokens and the Firestore client."""
import json
import logging

import firebase_admin
from firebase_admin import auth as firebase_auth
from firebase_admin import credentials
from firebase_admin import firestore

from agent_admin import config
from agent_admin.config import MissingConfigurationError

logger = logging.getLogger(__name__)


def _service_account_certificate():
    raw = config.get_firebase_service_account()
    if not raw:
        return None
    try:
        info = json.loads(raw)
    except ValueError:
        raise MissingConfigurationError("Invalid FIREBASE_SERVICE_ACCOUNT_KEY format")
    return credentials.Certificate(info)


def get_firebase_app(require_service_account: bool = False):
    """
    Return the default Firebase app, initializing it once.

    With FIREBASE_SERVICE_ACCOUNT_KEY set the app uses that certificate;
    otherwise Application Default Credentials. Minting custom tokens needs
    a signing key, so callers that do it pass require_service_account.

    Raises:
        MissingConfigurationError: If a required service account is absent
    """
    try:
        return firebase_admin.get_app()
    except ValueError:
        pass

    cert = _service_account_certificate()
    if cert is not None:
        app = firebase_admin.initialize_app(cert)
        logger.info("Firebase Admin initialized with service account")
        return app

    if require_service_account:
        raise MissingConfigurationError("FIREBASE_SERVICE_ACCOUNT_KEY environment variable is not set")

    options = {}
    if config.get_firebase_project_id():
        options["projectId"] = config.get_firebase_project_id()
    app = firebase_admin.initialize_app(credentials.ApplicationDefault(), options)
    logger.info("Firebase Admin initialized with default credentials")
    return app


def create_custom_token(uid: str) -> str:
    """Mint a Firebase custom token for a user id."""
    app = get_firebase_app(require_service_account=True)
    token = firebase_auth.create_custom_token(uid, app=app)
    return token.decode("utf-8") if isinstance(token, bytes) else token


def get_firestore_client():
    return firestore.client(get_firebase_app())
