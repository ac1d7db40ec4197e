"""
Changemaker — Multi-Tenant Engagement Challenges
=================================================
Workspaces run time-boxed challenges; participants enroll, submit
activities, earn points, and receive rewards issued through RewardSTACK.
Admins manage everything through a JSON API.

Package layout::

    changemaker/
    ├── config.py          # YAML → typed Python config
    ├── errors.py          # Domain exception hierarchy
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine + async helper
    │   ├── models.py      # All ORM models
    │   └── seed.py        # Demo workspace seeder
    ├── engine/
    │   ├── metrics.py     # Challenge metrics + leaderboard ranking
    │   ├── rewards.py     # Reward type labels + amount resolution
    │   └── invites.py     # Bulk invite parsing
    ├── rewardstack/
    │   ├── auth.py        # Basic Auth → JWT, per-environment token cache
    │   ├── client.py      # Authenticated HTTP client
    │   ├── participants.py # Participant sync (best effort)
    │   └── issuance.py    # Point adjustments + catalog transactions
    ├── services/          # Workspace-scoped business operations
    └── api/
        ├── main.py        # FastAPI app
        ├── auth.py        # Supabase JWT → local user
        └── routes/        # Workspace, challenge, reward endpoints
"""

__version__ = "0.1.0"
