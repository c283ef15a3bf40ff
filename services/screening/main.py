# Compatibility entrypoint for `uvicorn main:app`.

from services.screening.app import app  # noqa: F401
