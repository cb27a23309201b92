"""Client-side conversation state and gateway access."""
