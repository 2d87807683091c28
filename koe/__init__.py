"""
koe - streaming text-to-speech for agent chat.

Agent completion text is chunked on sentence boundaries, synthesized
over one ElevenLabs socket per turn, and multiplexed with the text
events into a single SSE stream.
"""
