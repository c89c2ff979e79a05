from .clock import ClockService
from .call import CallSession, CallState, CallType, SignalingMessage, AbstractMediaDevice
