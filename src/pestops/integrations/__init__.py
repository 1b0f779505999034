"""Clients and credential handling for QuickBooks Online and Google Calendar."""
