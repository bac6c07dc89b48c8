from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import logging
import os

from database import init_db
import allocation_api
import reconciliation_api

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(title="Stalo Resource Allocation API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(reconciliation_api.router)
app.include_router(allocation_api.router)


@app.on_event("startup")
def on_startup():
    init_db()


@app.get("/")
def read_root():
    return {"message": "Stalo Resource Allocation API is running"}


@app.get("/health")
def health():
    return {"status": "healthy"}
