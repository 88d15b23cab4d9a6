"""ASGI entrypoint: uvicorn lexbill.api.app:app"""

from lexbill.api.factory import create_app

app = create_app()
