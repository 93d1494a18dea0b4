"""Print queue lifecycle: derived status and live progress events."""
