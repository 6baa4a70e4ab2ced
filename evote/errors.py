"""Error kinds raised by the core and mapped to HTTP responses by the services."""


class VotingError(Exception):
    """Base for every caller-recoverable failure.

    ``kind`` is the stable machine-readable name sent to clients,
    ``status_code`` the HTTP status the services answer with.
    """

    kind = "VotingError"
    status_code = 400
    default_message = "Request could not be processed"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"error": self.message, "kind": self.kind}


# --- Identity verification ---

class NotEligible(VotingError):
    kind = "NotEligible"
    status_code = 403
    # Same text for unknown and ineligible registration numbers.
    default_message = "This registration number is not eligible to vote"


class ChannelUnavailable(VotingError):
    kind = "ChannelUnavailable"
    status_code = 400
    default_message = "The selected verification method is not available"


class ChallengeNotFound(VotingError):
    kind = "ChallengeNotFound"
    status_code = 404
    default_message = "Verification request not found. Please request a new code."


class InvalidCode(VotingError):
    kind = "InvalidCode"
    status_code = 400
    default_message = "Invalid verification code"


class TooManyAttempts(VotingError):
    kind = "TooManyAttempts"
    status_code = 429
    default_message = "Too many attempts. Please request a new code."


class AlreadyConfirmed(VotingError):
    kind = "AlreadyConfirmed"
    status_code = 409
    default_message = "This verification code has already been used"


# --- Ballot tokens ---

class InvalidToken(VotingError):
    kind = "InvalidToken"
    status_code = 401
    default_message = "Invalid ballot token"


class TokenExpired(VotingError):
    kind = "TokenExpired"
    status_code = 401
    default_message = "Ballot token expired. Please verify again."


class ChallengeExpired(TokenExpired):
    kind = "ChallengeExpired"
    status_code = 400
    default_message = "Verification code expired. Please request a new code."


class TokenConsumed(VotingError):
    kind = "TokenConsumed"
    status_code = 409
    default_message = "This ballot has already been cast"


class AlreadyVoted(VotingError):
    kind = "AlreadyVoted"
    status_code = 409
    default_message = "You have already voted"


# --- Casting ---

class InvalidSelection(VotingError):
    kind = "InvalidSelection"
    status_code = 400
    default_message = "Invalid ballot selection"

    def __init__(self, message: str | None = None, position_id: int | None = None):
        super().__init__(message)
        self.position_id = position_id

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["position_id"] = self.position_id
        return data


# --- Nominations ---

class MissingDocument(VotingError):
    kind = "MissingDocument"
    status_code = 400
    default_message = "Please upload both your photo and manifesto"


class InvalidDocument(VotingError):
    kind = "InvalidDocument"
    status_code = 400
    default_message = "Uploaded document is not acceptable"


class UnknownPosition(VotingError):
    kind = "UnknownPosition"
    status_code = 404
    default_message = "Position not found"


class DuplicateNomination(VotingError):
    kind = "DuplicateNomination"
    status_code = 409
    default_message = "A nomination for this position already exists"


class NominationNotFound(VotingError):
    kind = "NominationNotFound"
    status_code = 404
    default_message = "Nomination not found"


class ReasonRequired(VotingError):
    kind = "ReasonRequired"
    status_code = 400
    default_message = "Rejection reason is mandatory"


class InvalidDecision(VotingError):
    kind = "InvalidDecision"
    status_code = 400
    default_message = "Action must be APPROVE or REJECT"


class AlreadyDecided(VotingError):
    kind = "AlreadyDecided"
    status_code = 409
    default_message = "This nomination has already been decided"


# --- Administration ---

class Unauthorized(VotingError):
    kind = "Unauthorized"
    status_code = 401
    default_message = "Officer authorization required"


class InvalidRoll(VotingError):
    kind = "InvalidRoll"
    status_code = 400
    default_message = "Voter roll could not be read"


# --- Request shape ---

class InvalidRequest(VotingError):
    kind = "InvalidRequest"
    status_code = 422
    default_message = "Request body or parameters are invalid"
