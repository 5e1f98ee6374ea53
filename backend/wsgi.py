# backend/wsgi.py
from smartbiz import create_app

app = create_app()
