from stockyard import create_app
from stockyard.celery_app import create_celery_app

flask_app = create_app()
celery = create_celery_app(flask_app)
