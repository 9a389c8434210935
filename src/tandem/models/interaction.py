"""Results returned by the orchestrator to its callers."""

from typing import Dict, List, Optional, Any

from pydantic import BaseModel, Field

from .proposed_action import ActionResult, ProposedAction
from .turn import Turn


class Interaction(BaseModel):
    """Everything one ``submit_turn`` call appended and decided."""

    session_id: str = Field(..., description="Session the turn was submitted to")
    input_turn: Turn = Field(..., description="The submitted turn as appended")
    responder: Optional[str] = Field(None, description="Agent identity chosen to respond")
    turns: List[Turn] = Field(default_factory=list, description="All turns appended, in order")
    actions: List[ProposedAction] = Field(default_factory=list, description="Actions proposed during the interaction")
    task_updates: List[Dict[str, Any]] = Field(default_factory=list, description="Applied task transitions")
    backend_id: Optional[str] = Field(None, description="Backend that produced the response")
    attempts: List[str] = Field(default_factory=list, description="Backends tried, in order")
    error_code: Optional[str] = Field(None, description="Error code when the interaction failed")
    error_message: Optional[str] = Field(None, description="Error detail when the interaction failed")

    @property
    def response_turn(self) -> Optional[Turn]:
        """The responder's turn, if one was appended."""
        for turn in self.turns[1:]:
            if turn.author == self.responder:
                return turn
        return None

    @property
    def succeeded(self) -> bool:
        return self.error_code is None


class ActionDecision(BaseModel):
    """Outcome of ``decide_action``."""

    action_id: str = Field(..., description="Decided action")
    accepted: bool = Field(..., description="Whether the decision was recorded")
    approved: bool = Field(..., description="The decision requested")
    action: Optional[ProposedAction] = Field(None, description="Action state after the decision")
    result: Optional[ActionResult] = Field(None, description="Execution outcome for approved actions")
    turns: List[Turn] = Field(default_factory=list, description="System turns appended")
    error_code: Optional[str] = Field(None, description="Gate error code, if any")
    error_message: Optional[str] = Field(None, description="Gate error detail, if any")
