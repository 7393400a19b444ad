"""Clinical risk scoring and care-plan progress analytics.

This package contains the scoring instruments, domain models and services,
isolated from storage and transport so they are easy to test and reason about.
"""
