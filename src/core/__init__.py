from .client import KalshiClient, CredentialsError, load_private_key
from .models import Contract, ContractStatus, Orderbook, OrderbookLevel, OrderHandle, Side
from .config import ScalperConfig, get_scalper_config, load_config
