"""FastAPI backend for Budget Manager"""
