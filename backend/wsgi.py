# backend/wsgi.py
from channelops import create_app

app = create_app()
