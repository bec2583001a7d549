"""Repository layer for the custom-attribute engine.

- definitions: get_by_id, get_visible, list_for_entity, list_all, create,
               update, update_global, delete, delete_global, reorder
- values: get_all, get_one, upsert, upsert_many, delete_one,
          delete_all_for_entity, delete_all_for_entities, map_named_values
- consistency: destroy_entity, find_orphans, reconcile_orphans
"""
