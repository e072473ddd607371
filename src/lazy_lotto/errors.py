from __future__ import annotations

from typing import Optional


class LazyLottoError(RuntimeError):
    """Base for every failure the toolkit reports to an operator."""

    hint: Optional[str] = None

    def __init__(self, message: str, hint: Optional[str] = None) -> None:
        super().__init__(message)
        if hint is not None:
            self.hint = hint


# Configuration


class ConfigurationError(LazyLottoError):
    pass


class InvalidEnvironment(ConfigurationError):
    hint = "Use one of TEST, TESTNET, MAIN, MAINNET, PREVIEW, PREVIEWNET, LOCAL."


class InvalidOperator(ConfigurationError):
    hint = "ACCOUNT_ID must look like 0.0.1234 and the key must be Ed25519 or ECDSA."


class InvalidKeyAlgorithm(ConfigurationError):
    pass


class MissingSetting(ConfigurationError):
    hint = "Set it in .env or export it."


class MainnetConfirmationRequired(ConfigurationError):
    hint = 'Run interactively and type "MAINNET" when asked.'


class UsageError(ConfigurationError):
    pass


# ABI


class AbiError(LazyLottoError):
    pass


class ArtifactMissing(AbiError):
    hint = "Compile the contracts (npx hardhat compile) or point ARTIFACTS_DIR at the build output."


class AbiMismatch(AbiError):
    pass


class NonPayableCall(AbiMismatch):
    pass


# Mirror


class MirrorError(LazyLottoError):
    pass


class MirrorUnavailable(MirrorError):
    hint = "The mirror node did not answer; retry in a moment."


class NotFound(MirrorError):
    pass


class DecodeError(MirrorError):
    pass


class MirrorRequestRejected(MirrorError):
    pass


# Submission


class SubmissionError(LazyLottoError):
    pass


class SubmissionTimeout(SubmissionError):
    hint = "Chain state is unknown; look the transaction id up on the mirror before retrying."


# Preflight


class PreflightError(LazyLottoError):
    pass


class InsufficientBalance(PreflightError):
    pass


class AssociationFailed(PreflightError):
    pass


class AllowanceFailed(PreflightError):
    pass


class UnsupportedTokenKind(PreflightError):
    pass


# Multi-signature


class MultiSigError(LazyLottoError):
    pass


class Expired(MultiSigError):
    hint = "The validity window has passed; start over with a fresh freeze."


class InsufficientSignatures(MultiSigError):
    hint = "Request signatures from additional signers."


class WrongTransaction(MultiSigError):
    hint = "A signature was made over different transaction bytes; verify the files match."


class InvalidSignatureFile(MultiSigError):
    hint = "Check the file integrity or ask the signer to re-export it."


# Deployment


class DeploymentError(LazyLottoError):
    pass


class DeploymentFailed(DeploymentError):
    pass


class DeploymentAborted(DeploymentError):
    pass


class VerificationFailed(DeploymentError):
    def __init__(self, message: str, report=None) -> None:
        super().__init__(message)
        self.report = report


class CheckpointError(LazyLottoError):
    pass


class CheckpointLocked(CheckpointError):
    hint = "Another deployment is using this state file; wait for it or remove the stale .lock file."
