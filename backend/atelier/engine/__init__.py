"""Commission lifecycle and pricing rules. Every command receives the actor, `now` and an EnginePolicy."""
