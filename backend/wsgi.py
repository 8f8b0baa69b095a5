# backend/wsgi.py
from sakura import create_app

app = create_app()
