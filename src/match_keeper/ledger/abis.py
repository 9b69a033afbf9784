"""
ABI fragments for the contracts the keeper talks to.

Only the members the keeper uses are listed: GameConsole announces matches,
each PlayGround holds one match and its rounds.
"""

def _view(name: str, output_type: str) -> dict:
    return {
        "type": "function",
        "name": name,
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": output_type}],
    }

GAME_CONSOLE_ABI = [
    {
        "type": "event",
        "name": "MatchFound",
        "anonymous": False,
        "inputs": [
            {"name": "player1", "type": "address", "indexed": False},
            {"name": "player2", "type": "address", "indexed": False},
            {"name": "gameAddress", "type": "address", "indexed": False},
        ],
    },
]

PLAYGROUND_ABI = [
    _view("gameState", "uint8"),
    _view("gameCount", "uint256"),
    _view("moveSelectionStartTime", "uint256"),
    _view("moveSelectionDuration", "uint256"),
    _view("player1Moved", "bool"),
    _view("player2Moved", "bool"),
    _view("owner", "address"),
    {
        "type": "function",
        "name": "calculateResult",
        "stateMutability": "nonpayable",
        "inputs": [],
        "outputs": [],
    },
]

# gameState() value while the match is still being played.
GAME_STATE_ACTIVE = 0
