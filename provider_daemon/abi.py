"""Contract ABI subsets used by Web3Ledger."""

_AGREEMENT_TUPLE = {
    "name": "",
    "type": "tuple",
    "components": [
        {"name": "id", "type": "uint32"},
        {"name": "offerId", "type": "uint32"},
        {"name": "userAddr", "type": "address"},
        {"name": "providerOwnerAddr", "type": "address"},
        {"name": "balance", "type": "int256"},
        {"name": "startTs", "type": "uint256"},
        {"name": "endTs", "type": "uint256"},
        {"name": "status", "type": "uint8"},
    ],
}

PRODUCT_CATEGORY_ABI = [
    {
        "type": "event",
        "name": "AgreementCreated",
        "anonymous": False,
        "inputs": [
            {"name": "id", "type": "uint32", "indexed": True},
            {"name": "offerId", "type": "uint32", "indexed": True},
            {"name": "userAddr", "type": "address", "indexed": True},
            {"name": "providerOwnerAddr", "type": "address", "indexed": False},
            {"name": "initialDeposit", "type": "uint256", "indexed": False},
        ],
    },
    {
        "type": "event",
        "name": "AgreementClosed",
        "anonymous": False,
        "inputs": [
            {"name": "id", "type": "uint32", "indexed": True},
            {"name": "userAddr", "type": "address", "indexed": True},
            {"name": "providerOwnerAddr", "type": "address", "indexed": True},
        ],
    },
    {
        "type": "function",
        "name": "getAgreement",
        "stateMutability": "view",
        "inputs": [{"name": "id", "type": "uint32"}],
        "outputs": [_AGREEMENT_TUPLE],
    },
    {
        "type": "function",
        "name": "getAgreementBalance",
        "stateMutability": "view",
        "inputs": [{"name": "id", "type": "uint32"}],
        "outputs": [{"name": "", "type": "int256"}],
    },
    {
        "type": "function",
        "name": "getActiveAgreementIds",
        "stateMutability": "view",
        "inputs": [{"name": "providerOwnerAddr", "type": "address"}],
        "outputs": [{"name": "", "type": "uint32[]"}],
    },
    {
        "type": "function",
        "name": "closeAgreement",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "id", "type": "uint32"}],
        "outputs": [],
    },
]

REGISTRY_ABI = [
    {
        "type": "function",
        "name": "getActor",
        "stateMutability": "view",
        "inputs": [{"name": "ownerAddr", "type": "address"}],
        "outputs": [
            {
                "name": "",
                "type": "tuple",
                "components": [
                    {"name": "id", "type": "uint32"},
                    {"name": "ownerAddr", "type": "address"},
                    {"name": "operatorAddr", "type": "address"},
                    {"name": "detailsLink", "type": "string"},
                ],
            }
        ],
    },
]
