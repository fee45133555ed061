"""live-casso: real-time neural style transfer on a camera feed.

Frames pass a one-at-a-time gate into a pluggable PyTorch stylizer; frames that
arrive while the model is busy are dropped, and output is painted on the UI
thread.
"""
