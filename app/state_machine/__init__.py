"""
State Machine Module for the Deposit Lifecycle
"""
from app.state_machine.states import DepositStatus, DEPOSIT_TRANSITIONS, is_valid_transition

__all__ = ["DepositStatus", "DEPOSIT_TRANSITIONS", "is_valid_transition"]
