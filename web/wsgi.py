"""WSGI entrypoint used by Gunicorn.

Run with: `gunicorn -b 127.0.0.1:1090 wsgi:app`
"""

from app import app as app

# Common WSGI convention for other servers/tools.
application = app
