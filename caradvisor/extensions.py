"""Flask extension singletons, bound to the app in ``create_app``."""

import os
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from flask_login import LoginManager

db = SQLAlchemy()
migrate = Migrate()
# Bearer-token users only (request_loader in caradvisor.identity); no sessions
login_manager = LoginManager()

GEMINI_RECOMMENDER_MODEL_ID = os.environ.get("GEMINI_RECOMMENDER_MODEL_ID", "gemini-2.5-flash")
