"""
Grant Intake Backend Application Package

This package contains the FastAPI backend for grant application intake
and read-only review-link disclosure, including:

- main.py: FastAPI application and router wiring
- services/intake_service.py: streaming submission pipeline
- services/review_links.py: capability-token minting and verification
"""

__version__ = "1.0.0"
