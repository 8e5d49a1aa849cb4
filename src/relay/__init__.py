"""Twilio voice relay: per-call turn pipeline between Twilio Media Streams and speech/chat providers."""
