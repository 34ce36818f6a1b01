"""HTTP blueprints. ``requests_bp`` serves the approval workflow API under /api/v1."""
