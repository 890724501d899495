"""Local multichain test environments with a background message relayer."""
