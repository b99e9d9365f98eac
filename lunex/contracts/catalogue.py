"""
Lunex DEX deployment catalogue.

Deployment order, constructor argument templates, gas budgets, the
integration wiring sequence and the default post-deployment checks for the
five core contracts.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional

WNATIVE = "wnative"
FACTORY = "factory"
STAKING = "staking"
ROUTER = "router"
REWARDS = "rewards"
TOKEN = "token"

CORE_CONTRACTS = [WNATIVE, FACTORY, STAKING, ROUTER, REWARDS]

# Logical name -> compiled artifact name
ARTIFACTS: Dict[str, str] = {
    WNATIVE: "WNative",
    FACTORY: "LunexFactory",
    STAKING: "LunexStaking",
    ROUTER: "LunexRouter",
    REWARDS: "TradingRewards",
    TOKEN: "ERC20",
}

# Gas ceilings per instantiation
GAS_LIMITS: Dict[str, int] = {
    WNATIVE: 2_000_000,
    FACTORY: 5_000_000,
    STAKING: 6_000_000,
    ROUTER: 5_500_000,
    REWARDS: 4_000_000,
}

# Constructor argument templates; ${name} resolves to a deployed address
CONSTRUCTOR_ARGS: Dict[str, List[str]] = {
    WNATIVE: [],
    FACTORY: ["${deployer}"],
    STAKING: ["${treasury}"],
    ROUTER: ["${factory}", "${wnative}"],
    REWARDS: ["${deployer}", "${router}"],
}

DEPENDENCIES: Dict[str, List[str]] = {
    WNATIVE: [],
    FACTORY: [],
    STAKING: [],
    ROUTER: [FACTORY, WNATIVE],
    REWARDS: [ROUTER],
}

INTEGRATION_GAS = 200_000
LISTING_GAS = 300_000
BATCH_LISTING_GAS = 3_000_000
MAX_LISTING_BATCH = 50


@dataclass(frozen=True)
class IntegrationStep:
    """Setter wiring ``target``'s address into ``contract``.

    ``getter`` reads the currently stored value so a re-run can skip a step
    that is already in place.
    """
    contract: str
    setter: str
    target: str
    getter: Optional[str] = None

    def describe(self) -> str:
        return f"{self.contract}.{self.setter}({self.target})"


INTEGRATIONS: List[IntegrationStep] = [
    IntegrationStep(REWARDS, "setAuthorizedRouter", ROUTER, getter="authorizedRouter"),
    IntegrationStep(STAKING, "setTradingRewardsContract", REWARDS, getter="tradingRewardsContract"),
    IntegrationStep(REWARDS, "setStakingContract", STAKING, getter="stakingContract"),
]


@dataclass(frozen=True)
class IntegrationLink:
    contract: str
    key: str
    target: str


INTEGRATION_LINKS: List[IntegrationLink] = [
    IntegrationLink(step.contract, step.getter, step.target) for step in INTEGRATIONS if step.getter
] + [
    IntegrationLink(ROUTER, "factory", FACTORY),
    IntegrationLink(ROUTER, "wNative", WNATIVE),
]

PAUSE_QUERIES: Dict[str, str] = {
    STAKING: "isPaused",
    REWARDS: "isPaused",
}

SMOKE_QUERIES: Dict[str, str] = {
    WNATIVE: "name",
    FACTORY: "allPairsLength",
    STAKING: "getStats",
    ROUTER: "factory",
    REWARDS: "getStats",
}


def default_expectations(deployer: str, treasury: Optional[str] = None) -> Dict[str, Dict[str, str]]:
    """Expected read-only values after a catalogue deployment"""
    return {
        FACTORY: {"feeToSetter": deployer},
        ROUTER: {"factory": "${factory}", "wNative": "${wnative}"},
        STAKING: {"owner": deployer, "treasury": treasury or deployer},
        REWARDS: {"admin": deployer, "router": "${router}"},
    }
