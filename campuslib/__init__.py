"""campuslib - university library circulation backend

This package contains the core application modules including:
- Configuration (config.py)
- Database layer (database.py)
- Data models (models.py)
- Repositories and ledgers (repositories.py)
- Borrow/loan/fine lifecycle engine (lifecycle.py)
- Application wiring (library.py)
- API endpoints (api.py)
- CLI interface (main.py)
"""

__version__ = "1.0.0"
