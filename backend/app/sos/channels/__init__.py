"""
channels — Per-channel delivery backends.

Each channel module exposes:
    send(intent, provider=...) → DeliveryAttempt

Channels are stateless functions. Routing by intent kind lives in
dispatcher.ChannelTransport.
"""
