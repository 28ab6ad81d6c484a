"""Model parameter stores and the update rules that train them."""

from .parameters import Hyperparameters, ModelParameters  # noqa: F401
from .rules import (  # noqa: F401
    UPDATE_RULES,
    AlsRule,
    BiasSgdRule,
    FactorizationMachineRule,
    SvdppRule,
    UpdateRule,
    build_update_rule,
)
