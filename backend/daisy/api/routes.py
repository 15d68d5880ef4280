from fastapi import APIRouter

from .v1 import credentials, workflow

api_router = APIRouter(prefix="/api", tags=["workflow-editor"])

api_router.include_router(workflow.router, prefix="/v1", tags=["workflow"])
api_router.include_router(credentials.router, prefix="/v1", tags=["credentials"])


@api_router.get("/")
def read_root():
    return {"message": "Daisy workflow engine is running"}
