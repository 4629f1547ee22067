from dataclasses import dataclass

from .errors import ConfigError

SECONDS_PER_DAY = 86_400
BPS_DENOMINATOR = 10_000

@dataclass
class ProtocolConfig:
    # Protocol constants
    period_length_seconds: int = 30 * SECONDS_PER_DAY   # one reporting month
    min_underwriters: int = 2
    protocol_fee_bps: int = 500       # 5% of every fee share
    treasury_address: str = "sys_treasury"
    ledger_address: str = "sys_ledger"
    admin_address: str = "sys_admin"
    event_log_maxlen: int | None = None

    # Scenario: network size
    initial_venues: int = 5
    initial_underwriters: int = 12
    underwriters_per_venue: int = 3

    # Scenario: venue economics (collateral units)
    promised_revenue_mean: float = 1_200.0   # per month
    contract_months: int = 12
    revenue_volatility: float = 0.15          # relative stdev of monthly revenue
    shortfall_prob: float = 0.25              # chance a month is a bad month
    shortfall_depth: float = 0.3              # mean fractional miss in a bad month
    fee_rate_of_promise: float = 0.05         # fee as share of promised revenue

    # Scenario: underwriters
    underwriter_stake_mean: float = 5_000.0
    stake_coverage_ratio: float = 1.25        # committed stake / promised revenue
    owner_initial_balance_multiple: float = 20.0

    # Metrics
    metrics_stride: int = 1

    # Debug
    debug_stake: bool = False

    def __post_init__(self) -> None:
        if int(self.period_length_seconds) <= 0:
            raise ConfigError("period_length_seconds must be positive")
        if int(self.min_underwriters) < 2:
            raise ConfigError("min_underwriters must be at least 2")
        if not 0 <= int(self.protocol_fee_bps) <= BPS_DENOMINATOR:
            raise ConfigError("protocol_fee_bps must be within 0..10000")
        if int(self.contract_months) <= 0:
            raise ConfigError("contract_months must be positive")
        if self.underwriters_per_venue < self.min_underwriters:
            self.underwriters_per_venue = self.min_underwriters
        if self.underwriters_per_venue > self.initial_underwriters:
            raise ConfigError("underwriters_per_venue exceeds initial_underwriters")
        if self.stake_coverage_ratio < 1.0:
            raise ConfigError("stake_coverage_ratio below 1.0 can never satisfy an assignment")
        self.period_length_seconds = int(self.period_length_seconds)
        self.protocol_fee_bps = int(self.protocol_fee_bps)

    def protocol_cut(self, gross: int) -> int:
        return gross * self.protocol_fee_bps // BPS_DENOMINATOR
