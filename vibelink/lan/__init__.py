"""LAN link to a companion editor.

Discovers editor instances by sweeping the local network over HTTP, then keeps
one WebSocket session open to the chosen instance and mirrors its editor
state for the UI layer.
"""
