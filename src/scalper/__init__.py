from .events import EventChannel, EngineEvent, EventType
from .state import EngineState
from .signal_feed import SignalFeed, SignalSnapshot
from .correction_engine import CorrectionEngine, OutcomeRecord
from .edge_model import EdgeModel, Opportunity, OpportunityKind, TradeContext, kalshi_fee
from .risk_sizer import RiskSizer, StakeDecision
from .lifecycle import PositionLifecycleManager, Position, PositionStatus, ExitReason
from .scheduler import ScalperEngine
from .errors import ErrorType, ErrorTracker
