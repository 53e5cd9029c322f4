# OmniCRM core package
