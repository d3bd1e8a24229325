from providerhub.utils.keys import generate_temp_id, mask_api_key
from providerhub.utils.rename import apply_rules_to_name

__all__ = ["apply_rules_to_name", "generate_temp_id", "mask_api_key"]
