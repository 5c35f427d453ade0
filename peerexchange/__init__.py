"""Encrypted signaling exchange for direct peer-to-peer connections.

Modules:
- ``secret`` derives the symmetric key and relay channel from a connect key.
- ``envelope`` seals and opens signal fragments for the wire.
- ``batching`` coalesces outbound fragments into one broadcast per window.
- ``arbitration`` is the discovery/role state machine.
- ``exchange`` wires relay, peer library and state machine together.
- ``transport`` and ``hub`` are the pub/sub relay adapters.
- ``peer`` and ``webrtc`` define and implement the peer-connection contract.
- ``links`` and ``nicknames`` cover what humans see and share.
"""
