# module marketplace.app
from marketplace.app_setup.factory import create_app

# App globale
app = create_app()
