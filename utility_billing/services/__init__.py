"""Billing services: currency, periods, store access, penalties, payments and views."""
