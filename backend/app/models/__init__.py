"""Import all models so SQLAlchemy metadata knows about them."""
from app.models.base import Base
from app.models.user import User
from app.models.team import Team
from app.models.tournament import Tournament, TournamentTeam
from app.models.match import Match, Prediction, PointsLedger
from app.models.site_setting import SiteSetting

__all__ = [
    "Base",
    "User", "Team", "Tournament", "TournamentTeam",
    "Match", "Prediction", "PointsLedger", "SiteSetting",
]
