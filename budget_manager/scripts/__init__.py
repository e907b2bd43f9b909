"""Maintenance scripts"""
