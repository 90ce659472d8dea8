# backend/wsgi.py
from gemach import create_app

app = create_app()
