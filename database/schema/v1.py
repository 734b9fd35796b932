"""Schema v1 - Initial database schema.

This version includes tables for:
- Profiles, categories and listings
- Plans, subscriptions and payment transactions
- Discount codes
- Notifications and analytics events
"""

schema = {
    'version': 1,
    'tables': [
        {
            'name': 'profiles',
            'columns': [
                {'name': 'id', 'type': 'UUID', 'primary_key': True},
                {'name': 'full_name', 'type': 'TEXT'},
                {'name': 'email', 'type': 'TEXT'},
                {'name': 'phone', 'type': 'TEXT'},
                {'name': 'role', 'type': 'TEXT', 'nullable': False, 'default': "'user'"},
                {'name': 'listing_count', 'type': 'INT8', 'nullable': False, 'default': '0', 'check': 'listing_count >= 0'},
                {'name': 'created_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'},
                {'name': 'updated_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'}
            ]
        },
        {
            'name': 'categories',
            'columns': [
                {'name': 'id', 'type': 'INT8', 'primary_key': True},
                {'name': 'name', 'type': 'TEXT', 'nullable': False},
                {'name': 'slug', 'type': 'TEXT', 'unique': True}
            ]
        },
        {
            'name': 'subcategories',
            'columns': [
                {'name': 'id', 'type': 'INT8', 'primary_key': True},
                {'name': 'category_id', 'type': 'INT8', 'nullable': False},
                {'name': 'name', 'type': 'TEXT', 'nullable': False}
            ],
            'foreign_keys': [
                {'columns': ['category_id'], 'references': 'categories(id)', 'on_delete': 'CASCADE'}
            ],
            'indexes': [
                {'name': 'idx_subcategories_category', 'columns': ['category_id']}
            ]
        },
        {
            'name': 'plans',
            'columns': [
                {'name': 'id', 'type': 'TEXT', 'primary_key': True},
                {'name': 'name', 'type': 'TEXT', 'nullable': False},
                {'name': 'price', 'type': 'NUMERIC(12, 2)', 'nullable': False, 'default': '0'},
                {'name': 'duration_days', 'type': 'INT8', 'nullable': False, 'default': '30'},
                {'name': 'max_listings', 'type': 'INT8'},
                {'name': 'is_active', 'type': 'BOOLEAN', 'nullable': False, 'default': 'true'}
            ]
        },
        {
            'name': 'listings',
            'columns': [
                {'name': 'id', 'type': 'UUID', 'primary_key': True, 'default': 'gen_random_uuid()'},
                {'name': 'user_id', 'type': 'UUID', 'nullable': False},
                {'name': 'title', 'type': 'TEXT', 'nullable': False},
                {'name': 'slug', 'type': 'TEXT'},
                {'name': 'description', 'type': 'TEXT', 'nullable': False},
                {'name': 'price', 'type': 'NUMERIC(12, 2)', 'nullable': False, 'check': 'price >= 0'},
                {'name': 'category_id', 'type': 'INT8', 'nullable': False},
                {'name': 'subcategory_id', 'type': 'INT8'},
                {'name': 'condition', 'type': 'TEXT', 'nullable': False, 'default': "'used'"},
                {'name': 'location', 'type': 'TEXT'},
                {'name': 'latitude', 'type': 'DOUBLE PRECISION'},
                {'name': 'longitude', 'type': 'DOUBLE PRECISION'},
                {'name': 'images', 'type': 'TEXT[]', 'nullable': False, 'default': "'{}'"},
                {'name': 'tags', 'type': 'TEXT[]', 'nullable': False, 'default': "'{}'"},
                {'name': 'negotiable', 'type': 'BOOLEAN', 'nullable': False, 'default': 'false'},
                {'name': 'plan_id', 'type': 'TEXT', 'nullable': False, 'default': "'free'"},
                {'name': 'status', 'type': 'TEXT', 'nullable': False, 'default': "'pending'",
                 'check': "status IN ('pending', 'active', 'rejected', 'expired')"},
                {'name': 'payment_status', 'type': 'TEXT', 'nullable': False, 'default': "'unpaid'"},
                {'name': 'featured', 'type': 'BOOLEAN', 'nullable': False, 'default': 'false'},
                {'name': 'views', 'type': 'INT8', 'nullable': False, 'default': '0'},
                {'name': 'expires_at', 'type': 'TIMESTAMPTZ'},
                {'name': 'created_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'},
                {'name': 'updated_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'}
            ],
            'foreign_keys': [
                {'columns': ['user_id'], 'references': 'profiles(id)', 'on_delete': 'CASCADE'},
                {'columns': ['category_id'], 'references': 'categories(id)'},
                {'columns': ['subcategory_id'], 'references': 'subcategories(id)'}
            ],
            'indexes': [
                {'name': 'idx_listings_user', 'columns': ['user_id']},
                {'name': 'idx_listings_status', 'columns': ['status', 'created_at']},
                {'name': 'idx_listings_expiry', 'columns': ['expires_at'], 'where': "status = 'active'"}
            ]
        },
        {
            'name': 'discount_codes',
            'columns': [
                {'name': 'id', 'type': 'INT8 GENERATED BY DEFAULT AS IDENTITY', 'primary_key': True},
                {'name': 'code', 'type': 'TEXT', 'nullable': False, 'unique': True},
                {'name': 'type', 'type': 'TEXT', 'nullable': False,
                 'check': "type IN ('PERCENTAGE_DISCOUNT', 'FIXED_AMOUNT_DISCOUNT', 'EXTRA_LISTING_DAYS')"},
                {'name': 'value', 'type': 'NUMERIC(12, 2)', 'nullable': False, 'check': 'value >= 0'},
                {'name': 'description', 'type': 'TEXT'},
                {'name': 'expires_at', 'type': 'TIMESTAMPTZ'},
                {'name': 'max_uses', 'type': 'INT8'},
                {'name': 'use_count', 'type': 'INT8', 'nullable': False, 'default': '0'},
                {'name': 'is_active', 'type': 'BOOLEAN', 'nullable': False, 'default': 'true'},
                {'name': 'created_by_user_id', 'type': 'UUID'},
                {'name': 'created_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'},
                {'name': 'updated_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'}
            ]
        },
        {
            'name': 'transactions',
            'columns': [
                {'name': 'id', 'type': 'UUID', 'primary_key': True, 'default': 'gen_random_uuid()'},
                {'name': 'user_id', 'type': 'UUID', 'nullable': False},
                {'name': 'amount', 'type': 'NUMERIC(12, 2)', 'nullable': False, 'check': 'amount >= 0'},
                {'name': 'currency', 'type': 'TEXT', 'nullable': False, 'default': "'KES'"},
                {'name': 'status', 'type': 'TEXT', 'nullable': False, 'default': "'pending'",
                 'check': "status IN ('pending', 'completed', 'failed', 'cancelled')"},
                {'name': 'payment_method', 'type': 'TEXT', 'nullable': False},
                {'name': 'reference', 'type': 'TEXT', 'nullable': False, 'unique': True},
                {'name': 'listing_id', 'type': 'UUID'},
                {'name': 'plan_id', 'type': 'TEXT'},
                {'name': 'discount_code_id', 'type': 'INT8'},
                {'name': 'email', 'type': 'TEXT'},
                {'name': 'phone_number', 'type': 'TEXT'},
                {'name': 'psp_transaction_id', 'type': 'TEXT'},
                {'name': 'merchant_request_id', 'type': 'TEXT'},
                {'name': 'receipt_number', 'type': 'TEXT'},
                {'name': 'created_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'},
                {'name': 'updated_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'}
            ],
            'foreign_keys': [
                {'columns': ['user_id'], 'references': 'profiles(id)'},
                {'columns': ['listing_id'], 'references': 'listings(id)', 'on_delete': 'SET NULL'},
                {'columns': ['plan_id'], 'references': 'plans(id)'},
                {'columns': ['discount_code_id'], 'references': 'discount_codes(id)'}
            ],
            'indexes': [
                {'name': 'idx_transactions_user', 'columns': ['user_id']},
                {'name': 'idx_transactions_psp', 'columns': ['psp_transaction_id']},
                {'name': 'idx_transactions_pending_listing', 'columns': ['listing_id'],
                 'where': "status = 'pending'"}
            ]
        },
        {
            'name': 'subscriptions',
            'columns': [
                {'name': 'id', 'type': 'UUID', 'primary_key': True, 'default': 'gen_random_uuid()'},
                {'name': 'user_id', 'type': 'UUID', 'nullable': False},
                {'name': 'plan_id', 'type': 'TEXT', 'nullable': False},
                {'name': 'transaction_id', 'type': 'UUID', 'nullable': False, 'unique': True},
                {'name': 'status', 'type': 'TEXT', 'nullable': False, 'default': "'active'"},
                {'name': 'starts_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'},
                {'name': 'ends_at', 'type': 'TIMESTAMPTZ'},
                {'name': 'created_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'}
            ],
            'foreign_keys': [
                {'columns': ['user_id'], 'references': 'profiles(id)'},
                {'columns': ['plan_id'], 'references': 'plans(id)'},
                {'columns': ['transaction_id'], 'references': 'transactions(id)'}
            ]
        },
        {
            'name': 'notifications',
            'columns': [
                {'name': 'id', 'type': 'UUID', 'primary_key': True, 'default': 'gen_random_uuid()'},
                {'name': 'user_id', 'type': 'UUID', 'nullable': False},
                {'name': 'type', 'type': 'TEXT', 'nullable': False},
                {'name': 'title', 'type': 'TEXT', 'nullable': False},
                {'name': 'message', 'type': 'TEXT', 'nullable': False},
                {'name': 'data', 'type': 'JSONB'},
                {'name': 'read', 'type': 'BOOLEAN', 'nullable': False, 'default': 'false'},
                {'name': 'created_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'}
            ],
            'indexes': [
                {'name': 'idx_notifications_user', 'columns': ['user_id', 'read']}
            ]
        },
        {
            'name': 'analytics_events',
            'columns': [
                {'name': 'id', 'type': 'UUID', 'primary_key': True, 'default': 'gen_random_uuid()'},
                {'name': 'event', 'type': 'TEXT', 'nullable': False},
                {'name': 'distinct_id', 'type': 'TEXT'},
                {'name': 'properties', 'type': 'JSONB', 'nullable': False, 'default': "'{}'"},
                {'name': 'created_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'}
            ],
            'indexes': [
                {'name': 'idx_analytics_event', 'columns': ['event', 'created_at']}
            ]
        }
    ],
    'triggers': [
        {
            'name': 'notify_transaction_update_trigger',
            'function_name': 'notify_transaction_update',
            'table': 'transactions',
            'timing': 'AFTER',
            'events': ['UPDATE'],
            'level': 'ROW',
            'function_body': '''
                BEGIN
                    PERFORM pg_notify(
                        'transaction_updates',
                        json_build_object(
                            'id', (NEW).id,
                            'status', (NEW).status,
                            'reference', (NEW).reference
                        )::text
                    );
                    RETURN NEW;
                END;
            '''
        },
        {
            'name': 'touch_transactions_updated_at',
            'function_name': 'touch_updated_at',
            'table': 'transactions',
            'timing': 'BEFORE',
            'events': ['UPDATE'],
            'level': 'ROW',
            'function_body': '''
                BEGIN
                    NEW.updated_at = now();
                    RETURN NEW;
                END;
            '''
        },
        {
            'name': 'touch_listings_updated_at',
            'function_name': 'touch_updated_at',
            'table': 'listings',
            'timing': 'BEFORE',
            'events': ['UPDATE'],
            'level': 'ROW',
            'function_body': '''
                BEGIN
                    NEW.updated_at = now();
                    RETURN NEW;
                END;
            '''
        }
    ],
    'seed': [
        '''
        INSERT INTO plans (id, name, price, duration_days)
        VALUES ('free', 'Free', 0, 30)
        ON CONFLICT (id) DO NOTHING
        ''',
        '''
        INSERT INTO categories (id, name, slug) VALUES
            (1, 'Vehicles', 'vehicles'),
            (2, 'Property', 'property'),
            (3, 'Electronics', 'electronics'),
            (4, 'Home & Furniture', 'home-furniture'),
            (5, 'Fashion', 'fashion'),
            (6, 'Jobs', 'jobs'),
            (7, 'Services', 'services'),
            (8, 'Agriculture', 'agriculture')
        ON CONFLICT (id) DO NOTHING
        ''',
        '''
        INSERT INTO subcategories (id, category_id, name) VALUES
            (101, 1, 'Cars'),
            (102, 1, 'Motorbikes'),
            (103, 1, 'Vehicle Parts'),
            (201, 2, 'Houses for Rent'),
            (202, 2, 'Houses for Sale'),
            (203, 2, 'Land & Plots'),
            (301, 3, 'Mobile Phones'),
            (302, 3, 'Computers & Laptops'),
            (303, 3, 'TV & Audio'),
            (401, 4, 'Furniture'),
            (402, 4, 'Kitchen Appliances'),
            (501, 5, 'Clothing'),
            (502, 5, 'Shoes'),
            (601, 6, 'Full Time'),
            (602, 6, 'Part Time'),
            (701, 7, 'Repairs'),
            (702, 7, 'Events'),
            (801, 8, 'Livestock'),
            (802, 8, 'Farm Produce')
        ON CONFLICT (id) DO NOTHING
        '''
    ],
    'migrations': []
}
