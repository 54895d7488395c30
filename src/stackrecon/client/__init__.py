"""Remote CloudFormation client interface and its boto3 implementation."""

from stackrecon.client.base import RemoteStackClient, drift_detection_handle
from stackrecon.client.cloudformation import CloudFormationStackClient
from stackrecon.client.codec import (
    decode_parameters,
    decode_tags,
    encode_parameters,
    encode_tags,
)

__all__ = [
    'RemoteStackClient',
    'CloudFormationStackClient',
    'drift_detection_handle',
    'encode_tags',
    'decode_tags',
    'encode_parameters',
    'decode_parameters',
]
