"""Deployment pipeline components, leaves first.

probe → dependencies → artifact_fetcher → config_renderer →
supervisor → readiness → reporter
"""
