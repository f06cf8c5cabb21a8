"""botholder: keeps many game-client sessions alive against remote servers."""
