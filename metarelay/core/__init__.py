"""Core meta-transaction pipeline."""

from .encoding import (
    EncodedCall,
    build_call_data,
    decode_execute,
    encode_execute,
    execute_abi,
    execute_selector,
    execute_signature,
    prepare_deploy_bytecode,
)
from .errors import (
    CallerNotAllowed,
    EncodingError,
    EstimationError,
    InvalidArgument,
    MetaRelayError,
    SigningError,
    SubmissionError,
    UnconfirmedTimeout,
)
from .forward import (
    ForwardBuilder,
    ForwardRequest,
    ForwardSchema,
    NonceRegistry,
    PreparedForward,
    TypedDataDomain,
    generate_nonce,
    payload_hash,
)
from .outcome import (
    ExecutionOutcome,
    SubmissionState,
    compute_create_address,
    decode_event,
    find_event,
    get_deployed_address,
    verify_deployment,
)
from .relayer import BatchCall, BatchResult, MetaTxRelayer, RelayOptions
from .signing import ForwardSigner, SignedForward, recover_signer, sign_forward, verify_forward
from .submitter import (
    FeeParameters,
    GasPolicy,
    RelaySubmitter,
    ReplacementPolicy,
    SubmittedTransaction,
    TransactionCounter,
)

__all__ = [
    "BatchCall",
    "BatchResult",
    "CallerNotAllowed",
    "EncodedCall",
    "EncodingError",
    "EstimationError",
    "ExecutionOutcome",
    "FeeParameters",
    "ForwardBuilder",
    "ForwardRequest",
    "ForwardSchema",
    "ForwardSigner",
    "GasPolicy",
    "InvalidArgument",
    "MetaRelayError",
    "MetaTxRelayer",
    "NonceRegistry",
    "PreparedForward",
    "RelayOptions",
    "RelaySubmitter",
    "ReplacementPolicy",
    "SignedForward",
    "SigningError",
    "SubmissionError",
    "SubmissionState",
    "SubmittedTransaction",
    "TransactionCounter",
    "TypedDataDomain",
    "UnconfirmedTimeout",
    "build_call_data",
    "compute_create_address",
    "decode_event",
    "decode_execute",
    "encode_execute",
    "execute_abi",
    "execute_selector",
    "execute_signature",
    "find_event",
    "generate_nonce",
    "get_deployed_address",
    "payload_hash",
    "prepare_deploy_bytecode",
    "recover_signer",
    "sign_forward",
    "verify_deployment",
    "verify_forward",
]
