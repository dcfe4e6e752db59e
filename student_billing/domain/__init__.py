# Domain layer: subscription models, proration math and state merging
