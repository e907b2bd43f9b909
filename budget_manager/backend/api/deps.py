"""
Request dependencies

Hand the services built by the app factory to the routers.
"""
from fastapi import Request

from ...database import BudgetDatabase
from ...importer import TransactionImporter
from ...price_sources import AssetPricer
from ...reports import ReportGenerator


def get_db(request: Request) -> BudgetDatabase:
    return request.app.state.db


def get_reports(request: Request) -> ReportGenerator:
    return request.app.state.reports


def get_importer(request: Request) -> TransactionImporter:
    return request.app.state.importer


def get_pricer(request: Request) -> AssetPricer:
    return request.app.state.pricer
