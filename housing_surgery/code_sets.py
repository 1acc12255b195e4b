"""
================================================================================
CODE SETS - Diagnosis code patterns for derived admission flags
================================================================================
All flag derivations reference these definitions; no code ranges are
hard-coded elsewhere in the package.

Matching is plain substring search against the associated diagnosis codes
field. A code set matches a record if ANY pattern occurs anywhere in the
field. Prefix patterns (e.g. 'F2') therefore cover the whole range below them.
================================================================================
"""

import pandas as pd

# ============================================================================
# OUTCOMES
# ============================================================================

# Complications of surgical and medical care (ICD-10 T80-T87)
SURGICAL_COMPLICATION = {
    'name': 'Surgical/procedural complication',
    'patterns': tuple(f'T8{i}' for i in range(0, 8)),
    'description': 'T80-T87 complications of surgical and medical care',
}

# ============================================================================
# CONFOUNDERS
# ============================================================================

# Substance use disorders; F17 (nicotine) is left out on purpose
DRUG_ALCOHOL_DISORDER = {
    'name': 'Drug/alcohol use disorder',
    'patterns': ('F10', 'F11', 'F12', 'F13', 'F14', 'F15', 'F16', 'F18', 'F19'),
    'description': 'F10-F16, F18-F19 mental and behavioural disorders due to psychoactive substance use (excludes F17)',
}

# Psychotic, mood and anxiety disorders
MENTAL_ILLNESS = {
    'name': 'Mental illness',
    'patterns': ('F2', 'F3', 'F4'),
    'description': 'F2x schizophrenia spectrum, F3x mood disorders, F4x neurotic/stress-related disorders',
}

# ============================================================================
# REGISTRY
# ============================================================================

DIAGNOSIS_FLAGS = {
    'complication': SURGICAL_COMPLICATION,
    'drug_alcohol_disorder': DRUG_ALCOHOL_DISORDER,
    'mental_illness': MENTAL_ILLNESS,
}


def get_code_set_inventory():
    """Return a DataFrame listing every code set and the flag it drives."""
    inventory = []
    for flag, code_set in DIAGNOSIS_FLAGS.items():
        inventory.append({
            'flag': flag,
            'name': code_set['name'],
            'n_patterns': len(code_set['patterns']),
            'patterns': ', '.join(code_set['patterns']),
            'description': code_set['description'],
        })
    return pd.DataFrame(inventory)


def patterns_for(code_set):
    """
    Return the substring patterns of a code set.
    Accepts either a dict with a 'patterns' key or a flag name from DIAGNOSIS_FLAGS.
    """
    if isinstance(code_set, str):
        code_set = DIAGNOSIS_FLAGS[code_set]
    return tuple(code_set['patterns'])
