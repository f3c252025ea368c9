"""
Networking package for the tunnel server.
Includes the framing protocol and packet classification.
"""

from common.networking.tunnel import (
    TunnelConfig, TunnelError, FramingError, PeerDisconnect,
    FrameDecoder, TunnelClient, encode_frame, send_frame, read_frame, recv_exact
)
from common.networking.packet import PacketInfo, classify, is_tunneled

__all__ = [
    'TunnelConfig',
    'TunnelError',
    'FramingError',
    'PeerDisconnect',
    'FrameDecoder',
    'TunnelClient',
    'encode_frame',
    'send_frame',
    'read_frame',
    'recv_exact',
    'PacketInfo',
    'classify',
    'is_tunneled'
]
