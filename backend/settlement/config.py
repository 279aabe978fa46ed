# backend/settlement/config.py
from __future__ import annotations
import os


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/settlement.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///settlement.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Verifone R360 SOAP service (invoices + loyalty club)
    VERIFONE_ENDPOINT = os.environ.get(
        "VERIFONE_ENDPOINT",
        "http://62.219.182.125/R360.Server.IIS/Services/Services.asmx",
    )
    VERIFONE_CREATE_INVOICE_ACTION = "http://tempuri.org/CreateInvoice"
    VERIFONE_GET_CUSTOMERS_ACTION = "http://tempuri.org/GetCustomers"
    VERIFONE_CHAIN_ID = os.environ.get("VERIFONE_CHAIN_ID")
    VERIFONE_USERNAME = os.environ.get("VERIFONE_USERNAME")
    VERIFONE_PASSWORD = os.environ.get("VERIFONE_PASSWORD")
    VERIFONE_TIMEOUT_SECONDS = float(os.environ.get("VERIFONE_TIMEOUT_SECONDS", "10"))
    VERIFONE_STORE_NO = int(os.environ.get("VERIFONE_STORE_NO", "98"))
    VERIFONE_SUPPLY_STORE_NO = int(os.environ.get("VERIFONE_SUPPLY_STORE_NO", "13"))

    # Invoicing / loyalty policy
    VAT_PERCENT = 18
    POINTS_EARN_RATE = "0.05"

    # Batch points sync defaults (CLI)
    POINTS_SYNC_BATCH_SIZE = int(os.environ.get("POINTS_SYNC_BATCH_SIZE", "100"))
    POINTS_SYNC_CONCURRENCY = int(os.environ.get("POINTS_SYNC_CONCURRENCY", "5"))
